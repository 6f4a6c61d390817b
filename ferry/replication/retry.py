"""Bounded, fixed-interval retry around the SFTP transport."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Protocol

from ferry.replication.transport import TransportError
from ferry.schemas.replication import TransferResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_INTERVAL = 10.0


class Transport(Protocol):
    def destination_for(self, file_name: str) -> str: ...

    async def upload(self, local_path: str | Path, remote_path: str) -> None: ...


class ReplicationFailure(Exception):
    """Terminal failure for one file after every attempt was used up.

    The message is the last attempt's error; earlier errors are only logged.
    """

    def __init__(self, message: str, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class RetryController:
    """Sends a file through the transport, retrying failed attempts.

    Attempts run strictly one after another. A failed attempt is followed by
    ``retry_interval`` seconds of sleep, except after the last one.

    Usage::

        retry = RetryController(transport, max_retries=3, retry_interval=10)
        result = await retry.send("/mnt/files/a.txt", "a.txt")
        if not result.ok:
            print(result.error_message)
    """

    def __init__(
        self,
        transport: Transport,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        if retry_interval < 0:
            raise ValueError(f"retry_interval must not be negative, got {retry_interval}")
        self._transport = transport
        self._max_retries = max_retries
        self._retry_interval = retry_interval
        self._sleep = sleep

    async def send(self, local_path: str | Path, remote_name: str) -> TransferResult:
        """Transfer one file, returning success or the terminal ReplicationFailure."""
        remote_path = self._transport.destination_for(remote_name)
        last_error: BaseException | None = None

        for attempt in range(1, self._max_retries + 1):
            logger.info(
                "Transfer attempt %d/%d: file=%s dest=%s",
                attempt,
                self._max_retries,
                remote_name,
                remote_path,
            )
            try:
                await self._transport.upload(local_path, remote_path)
            except TransportError as exc:
                last_error = exc
                logger.warning(
                    "Transfer attempt %d/%d failed: file=%s error=%s",
                    attempt,
                    self._max_retries,
                    remote_name,
                    exc,
                )
            except Exception as exc:
                # Anything else escaping the transport still counts as a failed attempt.
                last_error = exc
                logger.warning(
                    "Transfer attempt %d/%d failed unexpectedly: file=%s error=%r",
                    attempt,
                    self._max_retries,
                    remote_name,
                    exc,
                )
            else:
                logger.info("Transfer succeeded: file=%s attempts=%d", remote_name, attempt)
                return TransferResult(remote_path=remote_path, attempts=attempt)

            if attempt < self._max_retries:
                logger.info("Retrying %s in %g seconds", remote_name, self._retry_interval)
                await self._sleep(self._retry_interval)

        failure = ReplicationFailure(
            str(last_error),
            attempts=self._max_retries,
            last_error=last_error,
        )
        return TransferResult(
            remote_path=remote_path,
            attempts=self._max_retries,
            failure=failure,
        )
