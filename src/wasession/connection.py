"""
Connection lifecycle manager.

Owns the single live transport, the session status, and the reconnect
policy. Transport events are queued and handled one at a time, in arrival
order, by a dispatch loop:

    CredentialUpdate       -> persisted before the next event is handled
    QrChallenge            -> forwarded to the QR presenter
    ConnectionStateChange  -> status transitions and reconnect policy
    MessageBatch           -> MessageDispatcher

Reconnects back off linearly (``base_delay * attempt``) and stop after
``max_reconnect_attempts`` or on a logged-out close.
"""

import asyncio
import functools
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from wasession.config import SessionConfig
from wasession.credentials import CredentialStore
from wasession.dispatcher import MessageDispatcher, MessageHandler, format_recipient
from wasession.exceptions import (
    CredentialStoreError,
    InitializationError,
    NotConnectedError,
    SendError,
    TerminalLogout,
)
from wasession.logger import get_logger
from wasession.models import (
    ConnectionState,
    ConnectionStateChange,
    ConnectionStatus,
    CredentialUpdate,
    DisconnectReason,
    MessageBatch,
    OutboundRequest,
    QrChallenge,
    TerminalReason,
    TransportEvent,
    TransportOptions,
)
from wasession.transport.base import TransportFactory, TransportSession

logger = get_logger(__name__)

QrPresenter = Callable[[str], Union[None, Awaitable[None]]]
TerminalCallback = Callable[[TerminalReason], Union[None, Awaitable[None]]]


def log_qr_challenge(payload: str) -> None:
    """Default QR presenter: log the raw payload for an external renderer."""
    logger.info(f"QR challenge received, scan it with your phone to pair: {payload}")


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class ConnectionManager:
    """
    Keeps one authenticated session alive.

    Args:
        store: Durable credential store.
        transport_factory: Builds a TransportSession from TransportOptions.
        config: Session settings (session id, timeouts, reconnect policy).
        qr_presenter: Receives raw QR payloads. Defaults to logging them.
        on_terminal: Called when reconnection stops for good.
    """

    def __init__(
        self,
        store: CredentialStore,
        transport_factory: TransportFactory,
        config: Optional[SessionConfig] = None,
        qr_presenter: Optional[QrPresenter] = None,
        on_terminal: Optional[TerminalCallback] = None,
    ):
        self.config = config or SessionConfig()
        self.session_id = self.config.session_id
        self.store = store
        self.dispatcher = MessageDispatcher()

        self.status = ConnectionStatus.DISCONNECTED
        self.reconnect_attempts = 0
        self.max_reconnect_attempts = self.config.max_reconnect_attempts
        self.base_reconnect_delay = self.config.base_reconnect_delay
        self.terminal_reason: Optional[TerminalReason] = None
        self.pending_reconnect_delay: Optional[float] = None
        self.logout_code: Optional[int] = None

        self._transport_factory = transport_factory
        self._qr_presenter = qr_presenter or log_qr_challenge
        self._terminal_callbacks: list[TerminalCallback] = []
        if on_terminal:
            self._terminal_callbacks.append(on_terminal)

        self._transport: Optional[TransportSession] = None
        self._generation = 0
        self._reconnect_token = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._dispatch_task: Optional[asyncio.Task] = None
        self._init_lock = asyncio.Lock()
        self._connected_event = asyncio.Event()
        self._closed = False

        self._handlers = {
            CredentialUpdate: self._on_credential_update,
            QrChallenge: self._on_qr_challenge,
            ConnectionStateChange: self.on_connection_state_change,
            MessageBatch: self._on_message_batch,
        }

    # -- Public API ----------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def transport(self) -> Optional[TransportSession]:
        return self._transport

    def on_message(self, handler: MessageHandler) -> None:
        """Register an application callback for inbound messages."""
        self.dispatcher.add_handler(handler)

    def on_terminal(self, callback: TerminalCallback) -> None:
        """Register a callback for when automatic reconnection stops."""
        self._terminal_callbacks.append(callback)

    async def initialize(self) -> TransportSession:
        """
        Load credentials and open a new transport.

        Clears any terminal state and cancels a pending scheduled reconnect.
        Does not retry on failure; retries only follow close events.

        Returns:
            The live transport.

        Raises:
            InitializationError: If credentials cannot be loaded or the
                transport cannot be created or started.
        """
        self._cancel_reconnect()
        self.terminal_reason = None
        self.logout_code = None
        self._closed = False
        return await self._open_transport()

    async def send_message(self, recipient: str, text: str) -> Any:
        """
        Send a text message.

        Returns:
            The transport's receipt, unchanged.

        Raises:
            TerminalLogout: If the device was logged out.
            NotConnectedError: If the session is not connected.
            SendError: If the transport rejects the message.
        """
        if self.terminal_reason == TerminalReason.LOGGED_OUT:
            raise TerminalLogout(self.logout_code or DisconnectReason.LOGGED_OUT)
        if not self.is_connected or self._transport is None:
            raise NotConnectedError(
                f"Client is not connected (status: {self.status.value})"
            )

        request = OutboundRequest(recipient=format_recipient(recipient), text=text)
        try:
            result = await self._transport.send(request.recipient, request.content())
        except Exception as e:
            logger.error(f"Failed to send message to {recipient}: {e}")
            raise SendError(recipient, str(e)) from e

        logger.info(f"Message sent to {recipient}")
        return result

    async def wait_until_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait for the session to open. Returns False on timeout."""
        if self.is_connected:
            return True
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def drain_events(self) -> None:
        """Wait until every queued transport event has been handled."""
        await self._events.join()

    async def logout(self) -> None:
        """Deauthorize this device on the service and shut down."""
        self._cancel_reconnect()
        async with self._init_lock:
            transport, self._transport = self._transport, None
            self._generation += 1
            if transport is not None:
                try:
                    await transport.logout()
                except Exception as e:
                    logger.warning(f"Transport logout failed: {e}")
        self.terminal_reason = TerminalReason.LOGGED_OUT
        await self.close()

    async def close(self) -> None:
        """Stop reconnecting, close the transport, and stop the dispatch loop."""
        self._closed = True
        self._cancel_reconnect()

        async with self._init_lock:
            await self._teardown_transport()

        self.status = ConnectionStatus.DISCONNECTED
        self._connected_event.clear()

        dispatch_task, self._dispatch_task = self._dispatch_task, None
        # A handler may call close() from inside the dispatch loop; that loop
        # stops by itself once the handler returns.
        if dispatch_task and dispatch_task is not asyncio.current_task():
            dispatch_task.cancel()
            try:
                await dispatch_task
            except asyncio.CancelledError:
                pass
        self._events = asyncio.Queue()
        logger.info(f"Session '{self.session_id}' closed.")

    def get_status(self) -> dict:
        """Return a snapshot of the session state."""
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "pending_reconnect_delay": self.pending_reconnect_delay,
            "terminal_reason": self.terminal_reason.value if self.terminal_reason else None,
        }

    # -- Event handling ------------------------------------------------------

    async def handle_event(self, event: TransportEvent) -> None:
        """Route one transport event to its handler."""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning(f"No handler for transport event {type(event).__name__}")
            return
        await handler(event)

    async def on_connection_state_change(self, event: ConnectionStateChange) -> None:
        """Apply a connection transition and run the reconnect policy."""
        if event.state == ConnectionState.OPEN:
            self._cancel_reconnect()
            self.status = ConnectionStatus.CONNECTED
            self.reconnect_attempts = 0
            self.terminal_reason = None
            self.logout_code = None
            self._connected_event.set()
            logger.info(f"Session '{self.session_id}' connected.")
            return

        if event.state == ConnectionState.CONNECTING:
            self.status = ConnectionStatus.CONNECTING
            self._connected_event.clear()
            return

        self.status = ConnectionStatus.DISCONNECTED
        self._connected_event.clear()

        if self._closed or self.terminal_reason == TerminalReason.LOGGED_OUT:
            return

        if event.is_logged_out:
            self._cancel_reconnect()
            self.terminal_reason = TerminalReason.LOGGED_OUT
            self.logout_code = event.close_reason
            logger.error(
                "Device logged out. Scan a new QR code on the next initialize()."
            )
            await self._notify_terminal(TerminalReason.LOGGED_OUT)
            return

        if self.reconnect_attempts < self.max_reconnect_attempts:
            self.reconnect_attempts += 1
            delay = self.base_reconnect_delay * self.reconnect_attempts
            logger.warning(
                f"Connection closed (reason: {event.close_reason}). "
                f"Reconnect attempt {self.reconnect_attempts}/"
                f"{self.max_reconnect_attempts} in {delay}s"
            )
            self._schedule_reconnect(delay)
            return

        self._cancel_reconnect()
        self.terminal_reason = TerminalReason.ATTEMPTS_EXHAUSTED
        logger.error(
            f"Connection closed permanently after {self.reconnect_attempts} "
            "reconnect attempts."
        )
        await self._notify_terminal(TerminalReason.ATTEMPTS_EXHAUSTED)

    async def _on_credential_update(self, update: CredentialUpdate) -> None:
        try:
            await self.store.save(self.session_id, update)
        except CredentialStoreError as e:
            logger.critical(f"Credential update was not persisted: {e}")
            return
        logger.debug(f"Credential update persisted for '{self.session_id}'")

    async def _on_qr_challenge(self, challenge: QrChallenge) -> None:
        await _maybe_await(self._qr_presenter(challenge.payload))

    async def _on_message_batch(self, batch: MessageBatch) -> None:
        await self.dispatcher.dispatch(batch)

    async def _notify_terminal(self, reason: TerminalReason) -> None:
        for callback in self._terminal_callbacks:
            try:
                await _maybe_await(callback(reason))
            except Exception as e:
                logger.error(f"Terminal callback {callback!r} failed: {e}")

    # -- Internal ------------------------------------------------------------

    async def _enqueue(self, generation: int, event: TransportEvent) -> None:
        await self._events.put((generation, event))

    def _ensure_dispatch_loop(self) -> None:
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(self._run_dispatch_loop())

    async def _run_dispatch_loop(self) -> None:
        """Handle queued events one at a time, in arrival order."""
        events = self._events
        while self._dispatch_task is asyncio.current_task():
            generation, event = await events.get()
            try:
                if generation != self._generation:
                    logger.debug(
                        f"Discarding {type(event).__name__} from a replaced transport"
                    )
                    continue
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Error handling {type(event).__name__}: {e}")
            finally:
                events.task_done()

    async def _open_transport(self) -> TransportSession:
        async with self._init_lock:
            await self._teardown_transport()

            try:
                credentials = await self.store.load(self.session_id)
            except CredentialStoreError as e:
                logger.error(f"Initialization failed: {e}")
                raise InitializationError(f"Could not load credentials: {e}") from e

            self._generation += 1
            options = TransportOptions(
                credentials=credentials,
                connect_timeout_ms=self.config.connect_timeout_ms,
                query_timeout_ms=self.config.query_timeout_ms,
                keep_alive_interval_ms=self.config.keep_alive_interval_ms,
                client_identity=self.config.client_identity,
            )

            try:
                transport = self._transport_factory(options)
            except Exception as e:
                logger.error(f"Initialization failed: {e}")
                raise InitializationError(f"Could not create transport: {e}") from e

            transport.set_callback(functools.partial(self._enqueue, self._generation))
            self._transport = transport
            self.status = ConnectionStatus.CONNECTING
            self._ensure_dispatch_loop()

            try:
                await transport.connect()
            except Exception as e:
                logger.error(f"Initialization failed: {e}")
                await self._teardown_transport()
                self.status = ConnectionStatus.DISCONNECTED
                raise InitializationError(f"Could not start transport: {e}") from e

            logger.info(
                f"Session '{self.session_id}' connecting "
                f"({'registered' if credentials.registered else 'awaiting QR pairing'})"
            )
            return transport

    async def _teardown_transport(self) -> None:
        """Close the live transport; its queued events become stale."""
        transport, self._transport = self._transport, None
        if transport is None:
            return
        self._generation += 1
        try:
            await transport.close()
        except Exception as e:
            logger.warning(f"Error closing previous transport: {e}")

    def _schedule_reconnect(self, delay: float) -> None:
        self._cancel_reconnect()
        self.pending_reconnect_delay = delay
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay, self._reconnect_token)
        )

    def _cancel_reconnect(self) -> None:
        self._reconnect_token += 1
        self.pending_reconnect_delay = None
        task, self._reconnect_task = self._reconnect_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_after(self, delay: float, token: int) -> None:
        await asyncio.sleep(delay)

        if (
            token != self._reconnect_token
            or self._closed
            or self.terminal_reason is not None
            or self.is_connected
        ):
            logger.debug("Discarding stale scheduled reconnect")
            return

        # From here on the attempt runs to completion; an open emitted during
        # connect() must not cancel it.
        self._reconnect_task = None
        self.pending_reconnect_delay = None
        logger.info(
            f"Reconnecting (attempt {self.reconnect_attempts}/"
            f"{self.max_reconnect_attempts})..."
        )
        try:
            await self._open_transport()
        except InitializationError as e:
            logger.error(f"Reconnect attempt failed: {e}")
            self._ensure_dispatch_loop()
            await self._enqueue(
                self._generation,
                ConnectionStateChange(state=ConnectionState.CLOSE, error=str(e)),
            )
