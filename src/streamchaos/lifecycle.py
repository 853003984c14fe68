# src/streamchaos/lifecycle.py
"""Broker process ownership: spawn, pause, resume, restart, teardown.

Every server gets a deterministic identity derived from its index:

    port        = base_port + index
    storage_dir = storage_root / f"jetstream_test_{index}"
    conf_path   = conf_dir / f"supercluster_{index}.conf"

The storage directory is wiped before every (re)spawn, so a restarted server
comes back with no on-disk state at all. That is total data loss for the
node, which is distinct from a pause (SIGSTOP), where the process keeps its
memory and sockets and simply stops getting CPU time.

ServerLifecycleManager is a context manager; leaving the block terminates
and reaps every process and removes every storage directory, whether the
block finished, raised a DurabilityViolation, or was interrupted.
"""

from __future__ import annotations

import shutil
import signal
import socket
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import IO, Any

from streamchaos.core.logging import get_logger
from streamchaos.errors import ClusterSetupError
from streamchaos.types import BrokerConfig, ServerState

logger = get_logger(__name__)

STORAGE_DIR_TEMPLATE = "jetstream_test_{index}"
CONF_FILE_TEMPLATE = "supercluster_{index}.conf"


@dataclass
class Server:
    """One broker process owned by the lifecycle manager.

    Attributes:
        index: Stable identity of the server within the cluster.
        port: Client port (base_port + index).
        storage_dir: Dedicated storage directory, wiped on every spawn.
        conf_path: Per-node cluster configuration file.
        process: Handle of the current process instance.
        state: RUNNING or PAUSED.
        generation: How many times this index has been spawned, minus one.
    """

    index: int
    port: int
    storage_dir: Path
    conf_path: Path
    process: subprocess.Popen[bytes]
    state: ServerState = ServerState.RUNNING
    generation: int = 0

    @property
    def address(self) -> str:
        """host:port clients connect to."""
        return f"127.0.0.1:{self.port}"

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_paused(self) -> bool:
        return self.state is ServerState.PAUSED


def server_port(config: BrokerConfig, index: int) -> int:
    """Deterministic client port of server ``index``."""
    return config.base_port + index


def storage_dir_for(config: BrokerConfig, index: int) -> Path:
    """Deterministic storage directory of server ``index``."""
    return config.storage_root / STORAGE_DIR_TEMPLATE.format(index=index)


def conf_path_for(config: BrokerConfig, index: int) -> Path:
    """Deterministic cluster config path of server ``index``."""
    return config.conf_dir / CONF_FILE_TEMPLATE.format(index=index)


def broker_command(config: BrokerConfig, index: int) -> list[str]:
    """Command line used to launch server ``index``."""
    return [
        config.path,
        "--port",
        str(server_port(config, index)),
        "-js",
        "-sd",
        str(storage_dir_for(config, index)),
        "-c",
        str(conf_path_for(config, index)),
        *config.extra_args,
    ]


def _wait_for_port(host: str, port: int, deadline: float, time_func: Callable[[], float]) -> bool:
    """Wait until a TCP port is accepting connections."""
    while time_func() < deadline:
        try:
            with socket.create_connection((host, port), timeout=0.2):
                return True
        except OSError:
            time.sleep(0.05)
    return False


class ServerLifecycleManager:
    """Owns every broker process of a local cluster.

    Index selection (which server to pause or resume) is the controller's
    job; the manager only enforces that pause and resume are no-ops when the
    server is already in the target state.
    """

    def __init__(
        self,
        config: BrokerConfig,
        server_count: int,
        *,
        log_dir: Path | None = None,
        time_func: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the manager. No process is started until start().

        Args:
            config: Broker launch settings.
            server_count: Number of servers in the cluster.
            log_dir: If set, each server's stdout/stderr is appended to
                log_dir/server_<i>.log instead of inheriting the terminal.
            time_func: Time function for testing (default: time.monotonic).
        """
        if server_count <= 0:
            raise ValueError(f"server_count must be positive, got {server_count}")
        self._config = config
        self._server_count = server_count
        self._log_dir = log_dir
        self._time_func = time_func if time_func is not None else time.monotonic
        self._servers: dict[int, Server] = {}
        self._log_files: dict[int, IO[Any]] = {}

    # -------------------------------------------------------------------------
    # Context management
    # -------------------------------------------------------------------------

    def __enter__(self) -> ServerLifecycleManager:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return self._server_count

    @property
    def servers(self) -> tuple[Server, ...]:
        """Currently managed servers, ordered by index."""
        return tuple(self._servers[i] for i in sorted(self._servers))

    def server(self, index: int) -> Server:
        """The server at ``index``.

        Raises:
            KeyError: If no server is running at that index.
        """
        return self._servers[index]

    @property
    def addresses(self) -> tuple[str, ...]:
        return tuple(s.address for s in self.servers)

    @property
    def paused_indices(self) -> frozenset[int]:
        return frozenset(i for i, s in self._servers.items() if s.is_paused)

    @property
    def running_indices(self) -> frozenset[int]:
        return frozenset(i for i, s in self._servers.items() if not s.is_paused)

    @property
    def all_paused(self) -> bool:
        return len(self.paused_indices) == len(self._servers)

    # -------------------------------------------------------------------------
    # Lifecycle operations
    # -------------------------------------------------------------------------

    def start(self) -> ServerLifecycleManager:
        """Spawn every server of the cluster."""
        for index in range(self._server_count):
            self.spawn(index)
        return self

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self._server_count:
            raise IndexError(f"server index {index} out of range 0..{self._server_count - 1}")

    def _output_for(self, index: int) -> IO[Any] | None:
        if self._log_dir is None:
            return None
        existing = self._log_files.get(index)
        if existing is not None:
            return existing
        self._log_dir.mkdir(parents=True, exist_ok=True)
        handle = (self._log_dir / f"server_{index}.log").open("ab")
        self._log_files[index] = handle
        return handle

    def spawn(self, index: int) -> Server:
        """Wipe the storage directory of ``index`` and launch a fresh broker.

        Raises:
            ClusterSetupError: If the broker binary cannot be executed.
            RuntimeError: If a process is already running at ``index``.
        """
        self._check_index(index)
        previous = self._servers.get(index)
        if previous is not None and previous.process.poll() is None:
            raise RuntimeError(f"server {index} is already running (pid {previous.pid})")

        storage_dir = storage_dir_for(self._config, index)
        shutil.rmtree(storage_dir, ignore_errors=True)
        storage_dir.mkdir(parents=True, exist_ok=True)

        command = broker_command(self._config, index)
        output = self._output_for(index)
        try:
            process = subprocess.Popen(command, stdout=output, stderr=output)
        except OSError as exc:
            shutil.rmtree(storage_dir, ignore_errors=True)
            raise ClusterSetupError(f"unable to spawn broker {self._config.path!r} for server {index}: {exc}") from exc

        server = Server(
            index=index,
            port=server_port(self._config, index),
            storage_dir=storage_dir,
            conf_path=conf_path_for(self._config, index),
            process=process,
            generation=previous.generation + 1 if previous is not None else 0,
        )
        self._servers[index] = server
        logger.info("server_spawned", index=index, port=server.port, pid=process.pid, generation=server.generation)
        return server

    def pause(self, index: int) -> bool:
        """Freeze server ``index`` in place with SIGSTOP.

        Returns:
            True if the server was paused, False if it already was or its
            process has exited.
        """
        server = self._servers[index]
        if server.is_paused:
            return False
        exit_code = server.process.poll()
        if exit_code is not None:
            logger.warning("pause_skipped_dead_server", index=index, pid=server.pid, exit_code=exit_code)
            return False
        server.process.send_signal(signal.SIGSTOP)
        server.state = ServerState.PAUSED
        logger.info("server_paused", index=index, pid=server.pid)
        return True

    def resume(self, index: int) -> bool:
        """Unfreeze server ``index`` with SIGCONT.

        Returns:
            True if the server was resumed, False if it was not paused.
        """
        server = self._servers[index]
        if not server.is_paused:
            return False
        server.process.send_signal(signal.SIGCONT)
        server.state = ServerState.RUNNING
        logger.info("server_resumed", index=index, pid=server.pid)
        return True

    def restart(self, index: int) -> Server:
        """Kill server ``index``, wipe its storage and respawn it.

        The new process has the same index, port and storage path but
        starts from an empty directory.
        """
        server = self._servers[index]
        logger.info("server_restarting", index=index, pid=server.pid, was_paused=server.is_paused)
        self._terminate(server)
        return self.spawn(index)

    def wait_until_ready(self, timeout_sec: float | None = None) -> None:
        """Bounded wait until every server accepts TCP connections.

        An accepting port only proves that *something* listens there. A
        broker whose bind failed (port held by another process) exits on
        its own, so every process is polled again after startup_settle_sec.

        Raises:
            ClusterSetupError: If a process exits or a port is not ready in time.
        """
        timeout = timeout_sec if timeout_sec is not None else self._config.startup_timeout_sec
        deadline = self._time_func() + timeout
        for server in self.servers:
            self._check_alive(server)
            if not _wait_for_port("127.0.0.1", server.port, deadline, self._time_func):
                self._check_alive(server)
                raise ClusterSetupError(f"server {server.index} did not accept connections on port {server.port} within {timeout:g}s")

        if self._config.startup_settle_sec > 0:
            time.sleep(self._config.startup_settle_sec)
        for server in self.servers:
            self._check_alive(server)
        logger.info("cluster_ready", servers=len(self._servers))

    def _check_alive(self, server: Server) -> None:
        exit_code = server.process.poll()
        if exit_code is not None:
            raise ClusterSetupError(
                f"server {server.index} exited with status {exit_code} during startup (is port {server.port} already in use?)"
            )

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def _terminate(self, server: Server) -> None:
        """Terminate and reap a server process. Never leaves a zombie."""
        process = server.process
        if process.poll() is None:
            if server.is_paused:
                # SIGTERM stays pending on a stopped process until it is continued.
                process.send_signal(signal.SIGCONT)
            process.terminate()
            try:
                process.wait(timeout=self._config.shutdown_timeout_sec)
            except subprocess.TimeoutExpired:
                logger.warning("server_kill_fallback", index=server.index, pid=process.pid)
                process.kill()
                process.wait()
        server.state = ServerState.RUNNING

    def close(self) -> None:
        """Terminate every process and remove every storage directory."""
        try:
            for server in self.servers:
                try:
                    self._terminate(server)
                finally:
                    shutil.rmtree(server.storage_dir, ignore_errors=True)
                logger.debug("server_torn_down", index=server.index)
        finally:
            self._servers.clear()
            for handle in self._log_files.values():
                handle.close()
            self._log_files.clear()
