"""Pluggable secret policy enforcement hooks.

A hook runs only after baseline secret access has been granted. It vetoes
access by raising; returning normally lets the chain continue.
"""

import logging
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

import requests

from .errors import EnterpriseError

logger = logging.getLogger(__name__)


@runtime_checkable
class SecretPolicyEnforcementHook(Protocol):
    def enforce(self, trace: Any) -> None:
        ...


class HookRejected(EnterpriseError):
    """Raised by a hook to veto secret access."""
    pass


class FunctionHook:
    """Adapts a plain callable to the hook interface."""

    def __init__(self, func: Optional[Callable[[Any], Any]]) -> None:
        self.func = func

    def enforce(self, trace: Any) -> None:
        if self.func is None:
            raise HookRejected("secret policy enforcement hook function is nil")
        self.func(trace)


def as_hook(hook: Any) -> Optional[SecretPolicyEnforcementHook]:
    """Return ``hook`` as an object with ``enforce``; None stays None."""
    if hook is None or isinstance(hook, SecretPolicyEnforcementHook):
        return hook
    if callable(hook):
        return FunctionHook(hook)
    raise TypeError(f"{type(hook).__name__} is not a secret policy enforcement hook")


class WebhookEnforcementHook:
    """Asks an external approval service whether secret access may proceed.

    The secret access trace is posted as JSON. A non-2xx response, or a body
    containing ``"allowed": false``, vetoes access with the body's ``reason``.
    """

    def __init__(self, url: str, timeout: int = 10,
                 session: Optional[requests.Session] = None,
                 headers: Optional[Dict[str, str]] = None) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {'Content-Type': 'application/json', **(headers or {})}

    def enforce(self, trace: Any) -> None:
        payload = trace.to_dict() if hasattr(trace, 'to_dict') else dict(trace)
        try:
            response = self.session.post(self.url, json=payload, headers=self.headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise HookRejected(f"approval webhook {self.url} unreachable: {e}")

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        reason = str(body.get('reason', '')).strip()

        if not response.ok:
            raise HookRejected(reason or f"approval webhook returned HTTP {response.status_code}")
        if body.get('allowed') is False:
            raise HookRejected(reason or "approval webhook rejected access")
        logger.debug("approval webhook %s allowed %s", self.url, payload.get('secret'))
