from __future__ import annotations
import asyncio
import time
from typing import Optional

import asyncssh

from .errors import BufferExceeded, CommandError, CommandTimeout, HostConnectionError
from .models import AuthMethod, CommandOutput, DEFAULT_MAX_BUFFER, HostTarget


_READ_CHUNK = 65536


def _decode(data: bytes | bytearray) -> str:
    return bytes(data).decode("utf-8", errors="replace")


class RemoteSession:
    """A single authenticated SSH connection to one host."""

    def __init__(self, target: HostTarget):
        self.target = target
        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._lock = asyncio.Lock()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected and self._conn is not None

    # ── Connection helpers ───────────────────────────────────────

    @staticmethod
    def _build_connect_kwargs(target: HostTarget) -> dict:
        """Build the kwargs dict for asyncssh.connect()."""
        creds = target.credentials
        kwargs: dict = {
            "host": target.address,
            "port": target.port,
            "username": creds.username,
            "known_hosts": None,
            "login_timeout": target.connect_timeout,
        }

        match creds.auth_method:
            case AuthMethod.PASSWORD:
                if not creds.password:
                    raise HostConnectionError(
                        "No authentication method provided (password required)",
                        code="NO_AUTH",
                        host=target.address,
                    )
                kwargs["password"] = creds.password
                kwargs["client_keys"] = []
            case AuthMethod.KEY:
                if creds.key_path:
                    kwargs["client_keys"] = [creds.key_path]
                if creds.passphrase:
                    kwargs["passphrase"] = creds.passphrase
            case AuthMethod.AGENT:
                pass  # asyncssh uses agent by default

        return kwargs

    async def connect(self) -> None:
        """Perform the SSH handshake and authenticate."""
        async with self._lock:
            if self._connected:
                return

            kwargs = self._build_connect_kwargs(self.target)
            name = self.target.display_name
            timeout = self.target.connect_timeout

            try:
                self._conn = await asyncio.wait_for(
                    asyncssh.connect(**kwargs), timeout=timeout
                )
            except asyncio.TimeoutError as e:
                raise HostConnectionError(
                    f"SSH connection timeout after {timeout}s",
                    code="TIMEOUT",
                    host=self.target.address,
                ) from e
            except asyncssh.PermissionDenied as e:
                raise HostConnectionError(
                    f"Authentication failed for {name}: {e.reason}",
                    code="AUTH_FAILED",
                    host=self.target.address,
                ) from e
            except asyncssh.Error as e:
                raise HostConnectionError(
                    f"Failed to connect to {name}: {e}",
                    code=e.code,
                    host=self.target.address,
                ) from e
            except OSError as e:
                raise HostConnectionError(
                    f"Failed to connect to {name}: {e}",
                    code=e.errno or "CONNECTION_ERROR",
                    host=self.target.address,
                ) from e
            except ValueError as e:
                # asyncssh.KeyImportError: unreadable key or missing passphrase
                raise HostConnectionError(
                    f"Invalid credentials for {name}: {e}",
                    code="INVALID_CREDENTIALS",
                    host=self.target.address,
                ) from e

            self._connected = True

    # ── Command execution ────────────────────────────────────────

    async def exec(
        self,
        command: str,
        timeout: float,
        max_buffer: int = DEFAULT_MAX_BUFFER,
    ) -> CommandOutput:
        """
        Run a command and wait for it to exit.

        Args:
            command:     Shell command string.
            timeout:     Wall-clock limit in seconds, enforced locally.
            max_buffer:  Byte cap for each of stdout and stderr.

        Raises:
            CommandError:         the command exited non-zero.
            CommandTimeout:       the timeout expired; the channel is destroyed.
            BufferExceeded:       an output stream went over max_buffer.
            HostConnectionError:  the channel could not be opened or was lost.
        """
        host = self.target.display_name
        if not self.connected:
            raise HostConnectionError("Not connected", code="NOT_CONNECTED", host=host)

        start = time.monotonic()

        try:
            process = await self._conn.create_process(command, encoding=None)
        except (asyncssh.Error, OSError) as e:
            self._connected = False
            raise HostConnectionError(
                f"Failed to execute command: {e}",
                code=getattr(e, "code", None),
                host=host,
            ) from e

        stdout = bytearray()
        stderr = bytearray()

        try:
            exit_status = await asyncio.wait_for(
                self._collect(process, stdout, stderr, max_buffer),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            process.close()
            raise CommandTimeout(timeout, host=host, stderr=_decode(stderr)) from e
        except BufferExceeded:
            process.close()
            raise
        except (asyncssh.Error, OSError) as e:
            process.close()
            self._connected = False
            raise HostConnectionError(
                f"Stream error: {e}",
                code=getattr(e, "code", None),
                host=host,
            ) from e

        exit_code = exit_status if exit_status is not None else -1
        if exit_code != 0:
            raise CommandError(
                exit_code,
                stderr=_decode(stderr),
                stdout=_decode(stdout),
                host=host,
            )

        return CommandOutput(
            exit_code=exit_code,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            duration=time.monotonic() - start,
        )

    async def _collect(
        self,
        process,
        stdout: bytearray,
        stderr: bytearray,
        max_buffer: int,
    ) -> Optional[int]:
        """Drain both output streams, then wait for the exit status."""
        readers = [
            asyncio.ensure_future(self._pump(process.stdout, stdout, "stdout", max_buffer)),
            asyncio.ensure_future(self._pump(process.stderr, stderr, "stderr", max_buffer)),
        ]
        try:
            await asyncio.gather(*readers)
        finally:
            for reader in readers:
                reader.cancel()

        await process.wait_closed()
        return process.exit_status

    async def _pump(self, stream, buffer: bytearray, label: str, max_buffer: int) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            buffer.extend(chunk)
            if len(buffer) > max_buffer:
                raise BufferExceeded(label, max_buffer, host=self.target.display_name)

    # ── Lifecycle ────────────────────────────────────────────────

    async def close(self) -> None:
        async with self._lock:
            if self._conn:
                self._conn.close()
                await self._conn.wait_closed()
            self._conn = None
            self._connected = False

    async def __aenter__(self) -> RemoteSession:
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
