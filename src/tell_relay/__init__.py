"""Inbound delivery relay between a remote message broker and local agents.

This package bridges a store-and-forward message broker to one or more
local consumers with features including:

- Streaming acquisition with polling fallback, or plain polling
- Sender delivery policy and per-identity routing
- Identity-correct replies using per-route credentials
- Durable per-account retry queue with dead-lettering
- Forwarding of renderings to a human channel (Telegram and host channels)
- Prometheus metrics and a FastAPI status API

Example:
    Running every configured account with an in-process consumer::

        from tell_relay.config_loader import load_relay_config
        from tell_relay.host import LocalConsumerHost
        from tell_relay.service import RelayService

        host = LocalConsumerHost()
        host.register("main", handle_message)
        service = RelayService(load_relay_config("config.ini"), host=host)
        await service.run()

Authors:
    Softwell S.r.l.
"""
