from __future__ import annotations

import asyncio
import logging
import signal
import socket
from contextlib import contextmanager
from typing import Callable, List

import uvicorn

from meshgate.api.proxy import create_proxy_app
from meshgate.api.public import create_public_app
from meshgate.bootstrap import BootstrapResult, BootstrapSequencer
from meshgate.config import GatewayConfig
from meshgate.daemon.commands import daemon_argv, join_argv, run_join
from meshgate.daemon.control import ControlClient, wait_until_ready
from meshgate.daemon.supervisor import DaemonSupervisor
from meshgate.errors import ListenerStartError
from meshgate.identity import IdentityResolver
from meshgate.store.state_store import open_state_store
from meshgate.structured_logging import log_event

log = logging.getLogger("meshgate.service")


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to the node service.

    Two servers share one event loop; letting each install its own handlers
    would have the second silently replace the first.
    """

    def install_signal_handlers(self) -> None:  # uvicorn < 0.29
        pass

    @contextmanager
    def capture_signals(self):  # uvicorn >= 0.29
        yield


def _server(app, *, host: str, port: int) -> _Server:
    # Callers are identified by their socket address; no header may rewrite it.
    return _Server(
        uvicorn.Config(
            app,
            host=host,
            port=port,
            proxy_headers=False,
            server_header=False,
            log_config=None,
            access_log=False,
            lifespan="on",
        )
    )


def bind_listener(host: str, port: int) -> socket.socket:
    """Bind a listening TCP socket, raising ListenerStartError on failure.

    uvicorn calls sys.exit() when its own bind fails.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(2048)
    except OSError as e:
        sock.close()
        raise ListenerStartError("failed to bind listener", host=host, port=port, error=str(e)) from e
    sock.set_inheritable(True)
    return sock


class NodeService:
    """Bootstrap the node, then serve until a listener stops, the daemon dies
    for good, or the process is signalled.

    Ordering: bootstrap completes before either listener binds, so the proxy
    never answers while the control channel is still coming up.
    """

    def __init__(self, cfg: GatewayConfig) -> None:
        self.cfg = cfg
        self.control = ControlClient(socket_path=cfg.socket_path, timeout_s=cfg.control_timeout_ms / 1000.0)
        self.daemon = DaemonSupervisor(
            daemon_argv(
                daemon_bin=cfg.daemon_bin,
                socket_path=cfg.socket_path,
                state_file=cfg.state_file,
                tun_mode=cfg.tun_mode,
            ),
            max_restarts=cfg.daemon_max_restarts,
            on_restart=self._await_restarted,
        )
        self._stop = asyncio.Event()

    async def await_ready(self, is_alive: Callable[[], bool]) -> None:
        await wait_until_ready(
            self.control,
            timeout_ms=self.cfg.ready_timeout_ms,
            backoff_min_ms=self.cfg.ready_backoff_min_ms,
            backoff_max_ms=self.cfg.ready_backoff_max_ms,
            is_alive=is_alive,
        )

    async def _await_restarted(self) -> None:
        await self.await_ready(self.daemon.is_alive)

    async def join(self) -> None:
        await run_join(
            join_argv(
                cli_bin=self.cfg.cli_bin,
                socket_path=self.cfg.socket_path,
                hostname=self.cfg.hostname,
                auth_key=self.cfg.auth_key,
            ),
            auth_key=self.cfg.auth_key,
            timeout_s=self.cfg.join_timeout_s,
        )

    async def bootstrap(self) -> BootstrapResult:
        sequencer = BootstrapSequencer(
            store=open_state_store(self.cfg.database_url, sslmode=self.cfg.db_sslmode),
            daemon=self.daemon,
            await_ready=self.await_ready,
            join=self.join,
            state_file=self.cfg.state_file,
            auth_key=self.cfg.auth_key,
            retention=self.cfg.state_retention,
        )
        return await sequencer.run()

    def request_stop(self) -> None:
        self._stop.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread, or no signal support on this loop.
                pass

    async def _serve(self) -> None:
        resolver = IdentityResolver(self.control)
        listeners = [
            (
                create_proxy_app(
                    resolver=resolver,
                    backend_url=self.cfg.backend_url,
                    identity_header=self.cfg.identity_header,
                    timeout_s=self.cfg.backend_timeout_s,
                ),
                self.cfg.proxy_host,
                self.cfg.proxy_port,
            ),
            (create_public_app(), "0.0.0.0", self.cfg.public_port),
        ]

        sockets: List[socket.socket] = []
        try:
            for _, host, port in listeners:
                sockets.append(bind_listener(host, port))
        except ListenerStartError:
            for sock in sockets:
                sock.close()
            raise

        servers: List[_Server] = [_server(app, host=host, port=port) for app, host, port in listeners]
        log_event(
            log,
            "listeners_starting",
            proxy_port=sockets[0].getsockname()[1],
            public_port=sockets[1].getsockname()[1],
            backend=self.cfg.backend_url,
        )

        tasks: List[asyncio.Task] = [
            asyncio.create_task(s.serve(sockets=[sock])) for s, sock in zip(servers, sockets)
        ]
        watch = asyncio.create_task(self.daemon.watch())
        stop = asyncio.create_task(self._stop.wait())

        try:
            done, _ = await asyncio.wait(tasks + [watch, stop], return_when=asyncio.FIRST_COMPLETED)

            for s in servers:
                s.should_exit = True
            await asyncio.gather(*tasks, return_exceptions=True)
            for t in (watch, stop):
                if not t.done():
                    t.cancel()
            await asyncio.gather(watch, stop, return_exceptions=True)
        finally:
            for sock in sockets:
                sock.close()

        # Surface a fatal daemon exit (or a listener crash) to the caller.
        for t in done:
            if t is not stop and not t.cancelled() and t.exception() is not None:
                raise t.exception()  # type: ignore[misc]

        log_event(log, "listeners_stopped", signalled=self._stop.is_set())

    async def run(self) -> BootstrapResult:
        self._install_signal_handlers()
        try:
            result = await self.bootstrap()
            await self._serve()
            return result
        finally:
            try:
                await self.daemon.stop()
            finally:
                await self.control.aclose()


async def run_node(cfg: GatewayConfig) -> BootstrapResult:
    return await NodeService(cfg).run()
