"""Outbound messaging transport.

The transport is an opaque HTTP service: it accepts a text message for a
recipient on behalf of a credential and answers with the message id it
assigned. Anything short of such an id is a :class:`TransportFailure`; no
fallback id is ever made up locally.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import urljoin

import requests

from ..errors import TransportFailure

logger = logging.getLogger(__name__)


class MessageTransport(Protocol):
    def send_text(self, credential: str, recipient: str, content: str) -> str:
        """Send ``content`` to ``recipient`` and return the transport message id."""


class HttpTransport:
    """:class:`MessageTransport` backed by a JSON-over-HTTP gateway."""

    def __init__(
        self,
        base_url: str | None,
        *,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self.session = session or requests.Session()

    def _endpoint(self) -> str:
        if not self._base_url:
            raise TransportFailure("Transport base URL is not configured")
        return urljoin(self._base_url.rstrip("/") + "/", "messages/text")

    def send_text(self, credential: str, recipient: str, content: str) -> str:
        url = self._endpoint()
        try:
            response = self.session.post(
                url,
                json={"to": recipient, "body": content},
                headers={"Authorization": f"Bearer {credential}"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Transport request to %s failed: %s", url, exc)
            raise TransportFailure(f"Transport request failed: {exc}") from exc

        if not response.ok:
            raise TransportFailure(
                f"Transport answered HTTP {response.status_code}",
                status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportFailure("Transport answered with a non-JSON body") from exc

        message_id = self._extract_id(payload)
        if not message_id:
            raise TransportFailure("Transport did not return a message id")
        return message_id

    @staticmethod
    def _extract_id(payload: Any) -> str | None:
        if not isinstance(payload, dict):
            return None
        for candidate in (
            payload.get("id"),
            payload.get("message_id"),
            (payload.get("message") or {}).get("id")
            if isinstance(payload.get("message"), dict)
            else None,
        ):
            if candidate:
                return str(candidate)
        return None


__all__ = ["HttpTransport", "MessageTransport"]
