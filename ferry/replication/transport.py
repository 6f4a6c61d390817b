"""SFTP transport: stream one local file to the remote host over SSH.

paramiko is synchronous; ``SftpTransport.upload`` runs the blocking
connect-upload-disconnect sequence through asyncio.to_thread().

The private key arrives base64-encoded and is decoded on every attempt into an
in-memory buffer that is dropped when the attempt ends. Nothing is written to
local storage.
"""

import asyncio
import logging
import posixpath
import socket
from io import StringIO
from pathlib import Path

import paramiko
from pydantic import BaseModel, ConfigDict, Field

from ferry.secrets import decode_private_key

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22
DEFAULT_CONNECT_TIMEOUT = 300.0  # 5 minutes
DEFAULT_OPERATION_TIMEOUT = 600.0  # 10 minutes

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.RSAKey,
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
)


class TransportError(Exception):
    """Raised when a single transport attempt fails (auth, connect, timeout, I/O)."""

    def __init__(
        self,
        message: str,
        *,
        host: str,
        remote_path: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.host = host
        self.remote_path = remote_path
        self.cause = cause


class SftpTarget(BaseModel):
    """Connection parameters for the remote host. Read-only after startup."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = DEFAULT_PORT
    username: str
    base_path: str = Field(description="Remote directory prefix for every upload")
    private_key_b64: str = Field(repr=False)
    key_passphrase: str | None = Field(default=None, repr=False)
    known_hosts_path: str | None = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT


def load_private_key(material: str, passphrase: str | None = None) -> paramiko.PKey:
    """Parse private key text, trying each supported key type in turn.

    Raises:
        ValueError: If no supported key type accepts the material.
    """
    errors = []
    for key_cls in _KEY_CLASSES:
        try:
            return key_cls.from_private_key(StringIO(material), password=passphrase or None)
        except (paramiko.SSHException, ValueError) as exc:
            errors.append(f"{key_cls.__name__}: {exc}")
    raise ValueError("Unsupported or invalid private key (" + "; ".join(errors) + ")")


class SftpTransport:
    """Uploads single files to one remote host via SFTP.

    Every call opens its own connection and tears it down afterwards.
    Existing files at the destination are overwritten.

    Usage::

        transport = SftpTransport(target)
        await transport.upload("/mnt/files/a.txt", transport.destination_for("a.txt"))
    """

    def __init__(self, target: SftpTarget) -> None:
        if not target.host:
            raise ValueError("SFTP target is missing a host")
        self._target = target

    def destination_for(self, file_name: str) -> str:
        """Remote path for a file name: base path + name."""
        return posixpath.join(self._target.base_path, file_name)

    async def upload(self, local_path: str | Path, remote_path: str) -> None:
        """Upload a file without blocking the event loop.

        Raises:
            TransportError: If the attempt fails for any reason.
        """
        await asyncio.to_thread(self.upload_sync, local_path, remote_path)

    def upload_sync(self, local_path: str | Path, remote_path: str) -> None:
        """Connect, authenticate, upload, disconnect. Intended for asyncio.to_thread().

        Raises:
            TransportError: If the attempt fails for any reason.
        """
        target = self._target
        sock: socket.socket | None = None
        transport: paramiko.Transport | None = None
        sftp: paramiko.SFTPClient | None = None

        try:
            pkey = load_private_key(
                decode_private_key(target.private_key_b64), target.key_passphrase
            )

            sock = socket.create_connection(
                (target.host, target.port), timeout=target.connect_timeout
            )
            transport = paramiko.Transport(sock)
            transport.banner_timeout = target.connect_timeout
            transport.auth_timeout = target.connect_timeout
            transport.start_client(timeout=target.connect_timeout)
            self._verify_host_key(transport)

            transport.auth_publickey(target.username, pkey)
            if not transport.is_authenticated():
                raise paramiko.AuthenticationException(
                    f"Public key authentication failed for {target.username}"
                )

            sftp = paramiko.SFTPClient.from_transport(transport)
            sftp.get_channel().settimeout(target.operation_timeout)
            sftp.put(str(local_path), remote_path)
            logger.debug(
                "Uploaded %s -> %s:%s", local_path, target.host, remote_path
            )
        except Exception as exc:
            raise TransportError(
                f"Upload of {Path(local_path).name} to {target.host}:{remote_path} failed: {exc}",
                host=target.host,
                remote_path=remote_path,
                cause=exc,
            ) from exc
        finally:
            if sftp is not None:
                sftp.close()
            if transport is not None:
                transport.close()
            elif sock is not None:
                sock.close()

    def _verify_host_key(self, transport: paramiko.Transport) -> None:
        """Check the server key against known_hosts, if one is configured."""
        known_hosts = self._target.known_hosts_path
        if not known_hosts:
            return

        host_keys = paramiko.HostKeys(known_hosts)
        lookup_name = self._target.host
        if self._target.port != DEFAULT_PORT:
            lookup_name = f"[{self._target.host}]:{self._target.port}"

        server_key = transport.get_remote_server_key()
        entry = host_keys.lookup(lookup_name)
        if not entry or server_key.get_name() not in entry:
            raise paramiko.SSHException(
                f"No {server_key.get_name()} key for {lookup_name} in {known_hosts}"
            )
        expected = entry[server_key.get_name()]
        if expected != server_key:
            raise paramiko.BadHostKeyException(lookup_name, server_key, expected)
