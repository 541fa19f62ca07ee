# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Route resolution from recipient identity to local consumer."""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Mapping

from .models import DEFAULT_ROUTE_KEY, RouteEntry, strip_identity_prefix


class RouteTable:
    """Immutable routing table for one broker account.

    Resolution always yields exactly one entry: the exact identity match,
    then the ``_default`` entry, then a hardcoded route to the default
    consumer with forwarding enabled.
    """

    def __init__(self, routes: Mapping[str, RouteEntry], default_consumer: str = "main"):
        self._routes: Mapping[str, RouteEntry] = MappingProxyType(
            {strip_identity_prefix(name).lower(): entry for name, entry in routes.items()}
        )
        self.default_consumer = default_consumer
        self._fallback = RouteEntry(consumer=default_consumer, forward=True)

    @property
    def routes(self) -> Mapping[str, RouteEntry]:
        return self._routes

    def resolve(self, identity: str | None) -> RouteEntry:
        """Return the route for ``identity``."""
        name = strip_identity_prefix(identity).lower()
        if name and name in self._routes:
            return self._routes[name]
        if DEFAULT_ROUTE_KEY in self._routes:
            return self._routes[DEFAULT_ROUTE_KEY]
        return self._fallback

    @staticmethod
    def reply_credential(entry: RouteEntry, account_api_key: str) -> str:
        """Credential used to reply as the routed identity.

        A route-specific key lets one broker account serve several identities
        while replies still originate from the identity that was addressed.
        """
        return entry.api_key or account_api_key

    def is_default_consumer(self, consumer: str) -> bool:
        return consumer == self.default_consumer

    def as_dict(self) -> Dict[str, dict]:
        return {name: entry.model_dump(exclude_none=True) for name, entry in self._routes.items()}
