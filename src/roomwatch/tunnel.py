"""SSH tunnel in front of the remote database.

One control connection is opened to the bastion host.  A listener on an
ephemeral ``127.0.0.1`` port forwards every accepted socket over its own
direct-tcpip channel to ``remote_host:remote_port``; asyncssh closes the
peer side when either end of a forwarded connection fails or hangs up.
"""

from __future__ import annotations

import logging
from pathlib import Path

import asyncssh

from roomwatch.config import TunnelConfig
from roomwatch.errors import TunnelError

logger = logging.getLogger(__name__)

LOCAL_BIND_HOST = "127.0.0.1"


def load_client_key(private_key: str, passphrase: str | None) -> asyncssh.SSHKey:
    """Load *private_key* from a file path or from the key text itself."""
    candidate = Path(private_key).expanduser()
    try:
        if "\n" not in private_key and candidate.is_file():
            return asyncssh.read_private_key(candidate, passphrase)
        return asyncssh.import_private_key(private_key, passphrase)
    except (OSError, asyncssh.KeyImportError) as exc:
        raise TunnelError(f"Could not load SSH private key: {exc}") from exc


class SSHTunnel:
    """Local port forward to the database through an SSH bastion."""

    def __init__(self, config: TunnelConfig, remote_host: str, remote_port: int) -> None:
        self._config = config
        self._remote_host = remote_host
        self._remote_port = remote_port
        self._conn: asyncssh.SSHClientConnection | None = None
        self._listener: asyncssh.SSHListener | None = None

    @property
    def local_host(self) -> str:
        return LOCAL_BIND_HOST

    @property
    def local_port(self) -> int:
        if self._listener is None:
            raise TunnelError("Tunnel is not open")
        return self._listener.get_port()

    @property
    def is_open(self) -> bool:
        return self._listener is not None

    def _auth_kwargs(self) -> dict:
        password = self._config.password.strip() or None
        if self._config.private_key.strip():
            key = load_client_key(self._config.private_key, password)
            return {"client_keys": [key], "password": None}
        if self._config.use_key:
            raise TunnelError("tunnel.use_key is set but tunnel.private_key is empty")
        return {"client_keys": None, "password": password}

    def _host_key_kwargs(self) -> dict:
        if not self._config.verify_host_key:
            logger.warning("SSH host key checking disabled for %s", self._config.host)
            return {"known_hosts": None}
        if self._config.known_hosts.strip():
            return {"known_hosts": str(Path(self._config.known_hosts).expanduser())}
        # asyncssh falls back to ~/.ssh/known_hosts
        return {}

    async def open(self) -> int:
        """Connect to the bastion and start forwarding; returns the local port."""
        if self._listener is not None:
            return self.local_port

        try:
            self._conn = await asyncssh.connect(
                self._config.host,
                port=self._config.port,
                username=self._config.user,
                **self._host_key_kwargs(),
                **self._auth_kwargs(),
            )
            self._listener = await self._conn.forward_local_port(
                LOCAL_BIND_HOST, 0, self._remote_host, self._remote_port
            )
        except (OSError, asyncssh.Error) as exc:
            await self.close()
            raise TunnelError(
                f"SSH tunnel to {self._config.host}:{self._config.port} failed: {exc}"
            ) from exc

        logger.info(
            "SSH tunnel open: %s:%d -> %s -> %s:%d",
            LOCAL_BIND_HOST,
            self.local_port,
            self._config.host,
            self._remote_host,
            self._remote_port,
        )
        return self.local_port

    async def close(self) -> None:
        """Close the local listener, then the control connection."""
        if self._listener is not None:
            self._listener.close()
            await self._listener.wait_closed()
            self._listener = None
        if self._conn is not None:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None
            logger.info("SSH tunnel to %s closed", self._config.host)
