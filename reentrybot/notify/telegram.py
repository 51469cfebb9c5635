from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

import requests

from reentrybot.runner.models import AccountRef

log = logging.getLogger("reentrybot.notify")

ChatLookup = Callable[[AccountRef], Optional[str]]

_MARKDOWN_SPECIAL = ("_", "*", "`", "[")


def escape_markdown(text: str) -> str:
    """Make exchange-supplied text (symbols, error bodies) safe inside a Markdown message."""
    out = str(text)
    for ch in _MARKDOWN_SPECIAL:
        out = out.replace(ch, "\\" + ch)
    return out


class Notifier(Protocol):
    def notify(self, account: AccountRef, message: str) -> None: ...


class LogNotifier:
    """Writes notifications to the log only (no bot token configured)."""

    def notify(self, account: AccountRef, message: str) -> None:
        log.info("[notify %s] %s", account, message)


class TelegramNotifier:
    """
    Fire-and-forget delivery through the Bot API sendMessage call.
    Delivery failures are logged and dropped, never retried.
    """

    def __init__(
        self,
        token: str,
        chat_lookup: ChatLookup,
        base_url: str = "https://api.telegram.org",
        timeout_s: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.token = token
        self.chat_lookup = chat_lookup
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.session = session or requests.Session()

    def notify(self, account: AccountRef, message: str) -> None:
        chat_id = self.chat_lookup(account)
        if not chat_id:
            log.info("[notify %s] (no chat id) %s", account, message)
            return

        url = f"{self.base_url}/bot{self.token}/sendMessage"
        try:
            r = self.session.post(
                url,
                json={"chat_id": chat_id, "text": message, "parse_mode": "Markdown"},
                timeout=self.timeout_s,
            )
        except requests.RequestException as e:
            log.warning("telegram send failed for %s: %s", account, e)
            return

        if r.status_code >= 400:
            log.warning(
                "telegram send failed for %s: HTTP %s %s",
                account, r.status_code, r.text[:200],
            )
