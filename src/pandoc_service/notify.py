"""
Operator notifications for server faults.

Backends are plain blocking ``Notifier`` implementations. The HTTP layer never
calls them directly: it enqueues messages on a ``NotificationDispatcher``
whose background worker delivers them with their own timeout, so a slow or
failing backend cannot delay or fail a client response.
"""

import asyncio
import smtplib
from email.message import EmailMessage
from typing import Sequence

import requests
from loguru import logger

from .config import NotificationSettings
from .conversion.interfaces import Notifier

HTTP_TIMEOUT = 10


class NotificationError(Exception):
    pass


class TelegramNotifier(Notifier):
    API_URL = "https://api.telegram.org/bot{token}/sendMessage"

    def __init__(self, api_token: str, chat_ids: Sequence[str], session: requests.Session | None = None) -> None:
        self._url = self.API_URL.format(token=api_token)
        self._chat_ids = list(chat_ids)
        self._session = session or requests.Session()

    def send(self, subject: str, message: str) -> None:
        for chat_id in self._chat_ids:
            resp = self._session.post(
                self._url, json={"chat_id": chat_id, "text": f"{subject}\n{message}"}, timeout=HTTP_TIMEOUT
            )
            resp.raise_for_status()


class DiscordNotifier(Notifier):
    API_URL = "https://discord.com/api/v10/channels/{channel_id}/messages"

    def __init__(
        self,
        bot_token: str,
        channel_ids: Sequence[str],
        *,
        oauth_token: str = "",
        session: requests.Session | None = None,
    ) -> None:
        # a bot token wins when both are configured
        if bot_token:
            self._headers = {"Authorization": f"Bot {bot_token}"}
        elif oauth_token:
            self._headers = {"Authorization": f"Bearer {oauth_token}"}
        else:
            raise ValueError("discord needs a bot token or an OAuth2 token")
        self._channel_ids = list(channel_ids)
        self._session = session or requests.Session()

    def send(self, subject: str, message: str) -> None:
        # Discord caps message content at 2000 characters
        content = f"{subject}\n{message}"[:2000]
        for channel_id in self._channel_ids:
            resp = self._session.post(
                self.API_URL.format(channel_id=channel_id),
                json={"content": content},
                headers=self._headers,
                timeout=HTTP_TIMEOUT,
            )
            resp.raise_for_status()


class MSTeamsNotifier(Notifier):
    def __init__(self, webhooks: Sequence[str], session: requests.Session | None = None) -> None:
        self._webhooks = list(webhooks)
        self._session = session or requests.Session()

    def send(self, subject: str, message: str) -> None:
        for url in self._webhooks:
            resp = self._session.post(url, json={"title": subject, "text": message}, timeout=HTTP_TIMEOUT)
            resp.raise_for_status()


class MailgunNotifier(Notifier):
    def __init__(
        self,
        domain: str,
        api_key: str,
        sender: str,
        recipients: Sequence[str],
        *,
        europe: bool = True,
        session: requests.Session | None = None,
    ) -> None:
        host = "api.eu.mailgun.net" if europe else "api.mailgun.net"
        self._url = f"https://{host}/v3/{domain}/messages"
        self._auth = ("api", api_key)
        self._sender = sender
        self._recipients = list(recipients)
        self._session = session or requests.Session()

    def send(self, subject: str, message: str) -> None:
        resp = self._session.post(
            self._url,
            auth=self._auth,
            data={"from": self._sender, "to": self._recipients, "subject": subject, "text": message},
            timeout=HTTP_TIMEOUT,
        )
        resp.raise_for_status()


class EmailNotifier(Notifier):
    def __init__(
        self,
        server: str,
        port: int,
        sender: str,
        recipients: Sequence[str],
        username: str = "",
        password: str = "",
    ) -> None:
        self._server = server
        self._port = port
        self._sender = sender
        self._recipients = list(recipients)
        self._username = username
        self._password = password

    def send(self, subject: str, message: str) -> None:
        msg = EmailMessage()
        msg["From"] = self._sender
        msg["To"] = ", ".join(self._recipients)
        msg["Subject"] = subject
        msg.set_content(message)
        with smtplib.SMTP(self._server, self._port, timeout=HTTP_TIMEOUT) as smtp:
            if self._username and self._password:
                smtp.starttls()
                smtp.login(self._username, self._password)
            smtp.send_message(msg)


class MultiNotifier(Notifier):
    """Fan a notification out to every backend; raise if any of them failed."""

    def __init__(self, notifiers: Sequence[Notifier]) -> None:
        self.notifiers = list(notifiers)

    def send(self, subject: str, message: str) -> None:
        failures = []
        for notifier in self.notifiers:
            try:
                notifier.send(subject, message)
            except Exception as e:
                failures.append(f"{type(notifier).__name__}: {e}")
        if failures:
            raise NotificationError("; ".join(failures))


def build_notifier(settings: NotificationSettings) -> MultiNotifier:
    services: list[Notifier] = []

    if settings.telegram.api_token:
        logger.info("Notifications: using telegram")
        services.append(TelegramNotifier(settings.telegram.api_token, settings.telegram.chat_ids))

    if settings.discord.bot_token or settings.discord.oauth_token:
        logger.info("Notifications: using discord")
        d = settings.discord
        services.append(DiscordNotifier(d.bot_token, d.channel_ids, oauth_token=d.oauth_token))

    if settings.email.server:
        logger.info("Notifications: using email")
        e = settings.email
        services.append(EmailNotifier(e.server, e.port, e.sender, e.recipients, e.username, e.password))

    if settings.mailgun.api_key:
        logger.info("Notifications: using mailgun")
        m = settings.mailgun
        services.append(MailgunNotifier(m.domain, m.api_key, m.sender_address, m.recipients, europe=m.europe))

    if settings.msteams.webhooks:
        logger.info("Notifications: using msteams")
        services.append(MSTeamsNotifier(settings.msteams.webhooks))

    return MultiNotifier(services)


class NotificationDispatcher:
    """Background delivery of notifications through an asyncio queue."""

    def __init__(self, notifier: Notifier, *, timeout: float = 10.0, maxsize: int = 100) -> None:
        self._notifier = notifier
        self._timeout = timeout
        self._queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None

    @property
    def queue(self) -> asyncio.Queue[tuple[str, str]]:
        return self._queue

    def enqueue(self, subject: str, message: str) -> bool:
        try:
            self._queue.put_nowait((subject, message))
        except asyncio.QueueFull:
            logger.warning("notification queue full, dropping notification", subject=subject)
            return False
        return True

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._worker_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def join(self) -> None:
        await self._queue.join()

    async def _worker_loop(self) -> None:
        while True:
            subject, message = await self._queue.get()
            try:
                logger.debug("sending error notification", err=message)
                await asyncio.wait_for(asyncio.to_thread(self._notifier.send, subject, message), timeout=self._timeout)
            except asyncio.TimeoutError:
                logger.error("error on notification send", err=f"timed out after {self._timeout:g}s")
            except Exception as e:
                logger.error("error on notification send", err=str(e))
            finally:
                self._queue.task_done()
