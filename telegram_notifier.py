"""
Telegram Notifier
=================
- Fire-and-forget: notify() enqueues, a daemon thread delivers
- Rate-limited sends via the Bot HTTP API (HTML parse_mode)
- Delivery failures are logged and dropped; they never reach the caller
- LogNotifier is the drop-in sink when no bot token is configured
"""

import html
import logging
import queue
import threading
import time
from typing import Any, Dict, Optional

import requests

import config
from interfaces import NotificationKind

logger = logging.getLogger(__name__)

_EMOJI = {
    NotificationKind.TRADE:  "💹",
    NotificationKind.ERROR:  "🔴",
    NotificationKind.STATUS: "ℹ️",
}

MAX_MESSAGE_LEN = 4096


def format_message(kind: NotificationKind, payload: Dict[str, Any]) -> str:
    lines = [f"{_EMOJI[kind]} <b>{kind.value.upper()}</b>"]
    title = payload.get("title")
    if title:
        lines.append(f"<b>{html.escape(str(title))}</b>")
    for key, value in payload.items():
        if key == "title":
            continue
        if isinstance(value, float):
            value = f"{value:,.4f}"
        lines.append(f"{html.escape(key)}: <code>{html.escape(str(value))}</code>")
    text = "\n".join(lines)
    if len(text) > MAX_MESSAGE_LEN:
        text = text[:MAX_MESSAGE_LEN - 16] + "\n…[truncated]"
    return text


class LogNotifier:
    """Writes notifications to the log; used when Telegram is not configured."""

    def notify(self, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        level = logging.ERROR if kind is NotificationKind.ERROR else logging.INFO
        logger.log(level, f"{_EMOJI[kind]} [{kind.value}] {payload}")


class TelegramNotifier:

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        min_interval: float = config.TELEGRAM_MIN_SEND_INTERVAL,
        queue_size: int = config.TELEGRAM_QUEUE_SIZE,
        session: Optional[requests.Session] = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.min_interval = min_interval
        self.session = session or requests.Session()
        self._queue: "queue.Queue[str]" = queue.Queue(maxsize=queue_size)
        self._last_send = 0.0
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._worker, name="telegram-sender", daemon=True
        )
        self._thread.start()

    @property
    def url(self) -> str:
        return f"https://api.telegram.org/bot{self.bot_token}/sendMessage"

    def notify(self, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(format_message(kind, payload))
        except queue.Full:
            logger.warning("Telegram send queue full - message dropped")

    def send_now(self, text: str) -> bool:
        """Synchronous delivery; returns False on any failure."""
        wait = self.min_interval - (time.time() - self._last_send)
        if wait > 0:
            time.sleep(wait)
        try:
            resp = self.session.post(self.url, json={
                "chat_id": self.chat_id,
                "text": text,
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            }, timeout=10)
        except requests.RequestException as e:
            logger.error(f"Error sending Telegram message: {e}")
            return False
        finally:
            self._last_send = time.time()
        if resp.status_code != 200:
            logger.warning(f"Telegram send failed: {resp.status_code} - {resp.text[:200]}")
            return False
        return True

    def _worker(self) -> None:
        while not self._stop.is_set():
            try:
                text = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                self.send_now(text)
            finally:
                self._queue.task_done()

    def flush(self, timeout: float = 10.0) -> None:
        deadline = time.time() + timeout
        while self._queue.unfinished_tasks and time.time() < deadline:
            time.sleep(0.1)

    def close(self) -> None:
        self.flush()
        self._stop.set()


def build_notifier():
    if config.TELEGRAM_BOT_TOKEN and config.TELEGRAM_CHAT_ID:
        logger.info("✅ Telegram notifications enabled")
        return TelegramNotifier(config.TELEGRAM_BOT_TOKEN, config.TELEGRAM_CHAT_ID)
    logger.info("Telegram not configured - notifications go to the log")
    return LogNotifier()
