"""
FirewallWindow — the bounded interval in which validation traffic may pass
the perimeter.

Usage:
    with FirewallWindow(client, target) as window:
        ...  # challenge published, authority validates
    # rule is back to Deny here, whatever happened inside the block

``close()`` runs at most once per window, so an explicit close inside the
block followed by the guard's exit does not touch the rule twice.  With no
target configured every method is a no-op and the client is never called.
"""
from __future__ import annotations

import logging
import time
from types import TracebackType
from typing import Callable, Optional

from cloud.base import CloudError, FirewallClient
from renewal.errors import FirewallUpdateError
from renewal.models import FirewallState, FirewallTarget, RuleAction

logger = logging.getLogger(__name__)

DEFAULT_PROPAGATION_SECONDS = 30.0


class FirewallWindow:
    def __init__(
        self,
        client: Optional[FirewallClient],
        target: Optional[FirewallTarget],
        propagation_seconds: float = DEFAULT_PROPAGATION_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if target is not None and client is None:
            raise ValueError("A firewall target needs a firewall client")
        self.client = client
        self.target = target
        self.propagation_seconds = propagation_seconds
        self._sleep = sleep
        self.state = FirewallState.CLOSED

    @property
    def managed(self) -> bool:
        return self.target is not None

    def open(self) -> None:
        if self.target is None:
            logger.info("No firewall rule configured — skipping firewall management")
            return
        self._ensure_rule()
        # From here on the rule may allow traffic, even if the write below fails.
        self.state = FirewallState.OPEN
        self._set(RuleAction.ALLOW)
        logger.info(
            "Firewall rule %s/%s opened — waiting %.0fs for propagation",
            self.target.group, self.target.rule, self.propagation_seconds,
        )
        if self.propagation_seconds > 0:
            self._sleep(self.propagation_seconds)

    def close(self) -> None:
        if self.target is None or self.state is FirewallState.CLOSED:
            return
        self._ensure_rule()
        self._set(RuleAction.DENY)
        self.state = FirewallState.CLOSED
        logger.info("Firewall rule %s/%s closed", self.target.group, self.target.rule)

    # ── Context manager ───────────────────────────────────────────────────

    def __enter__(self) -> "FirewallWindow":
        try:
            self.open()
        except BaseException:
            # __exit__ is not called when __enter__ raises.
            self._close_quietly()
            raise
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc_type is None:
            self.close()
        else:
            self._close_quietly()

    # ── Internal ──────────────────────────────────────────────────────────

    def _close_quietly(self) -> None:
        """Close while another error is propagating; never masks that error."""
        try:
            self.close()
        except Exception as close_exc:
            logger.error(
                "FIREWALL MAY BE LEFT OPEN: could not restore %s/%s to Deny: %s",
                self.target.group if self.target else "?",
                self.target.rule if self.target else "?",
                close_exc,
            )

    def _bound(self) -> tuple[FirewallTarget, FirewallClient]:
        if self.target is None or self.client is None:
            raise RuntimeError("Firewall window has no rule to manage")
        return self.target, self.client

    def _ensure_rule(self) -> None:
        target, client = self._bound()
        try:
            rule = client.get_rule(target.resource_group, target.group, target.rule)
        except CloudError as exc:
            raise FirewallUpdateError(
                f"Could not read firewall group {target.group!r}: {exc}"
            ) from exc
        if rule is None:
            raise FirewallUpdateError(
                f"Firewall rule {target.rule!r} not found in {target.group!r}"
            )

    def _set(self, action: RuleAction) -> None:
        target, client = self._bound()
        try:
            client.set_rule_action(target.resource_group, target.group, target.rule, action)
        except CloudError as exc:
            raise FirewallUpdateError(
                f"Could not set {target.group}/{target.rule} to {action.value}: {exc}"
            ) from exc
