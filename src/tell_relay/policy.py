# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Sender filtering applied before any routing or dispatch."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .config_loader import DeliveryPolicyConfig
from .models import strip_identity_prefix


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of :func:`check_delivery_policy`."""

    allowed: bool
    reason: Optional[str] = None


ALLOW = PolicyDecision(True)


def _normalise(sender: str) -> str:
    return strip_identity_prefix(sender).lower()


def _contains(names: Iterable[str], sender: str) -> bool:
    return sender in {_normalise(name) for name in names}


def check_delivery_policy(sender: str, policy: DeliveryPolicyConfig) -> PolicyDecision:
    """Decide whether messages from ``sender`` are accepted.

    ``everyone`` and its alias ``blocklist`` reject blocklisted senders,
    ``allowlist`` accepts only allowlisted senders, and any other mode
    accepts everybody.
    """
    normalized = _normalise(sender)
    mode = (policy.policy or "everyone").lower()
    if mode in ("everyone", "blocklist"):
        if _contains(policy.blocklist, normalized):
            return PolicyDecision(False, "sender on blocklist")
        return ALLOW
    if mode == "allowlist":
        if _contains(policy.allowlist, normalized):
            return ALLOW
        return PolicyDecision(False, "sender not on allowlist")
    return ALLOW


def is_auto_reply_allowed(sender: str, policy: DeliveryPolicyConfig) -> bool:
    """Return ``True`` when a consumer may answer ``sender`` without a human."""
    return _contains(policy.auto_reply_allowlist, _normalise(sender))
