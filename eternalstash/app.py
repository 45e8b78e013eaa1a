"""Application bootstrap for EternalStash.

Startup order:
    config -> logging -> k8s client -> store + recorder
           -> cache + normalizer + pod watcher -> (wait for sync) -> query API

Teardown runs the other way round.  Stopping the watcher first guarantees no
new usage events reach the recorder while it drains.  Every teardown step is
isolated, so one failing component cannot keep the rest alive.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

from eternalstash.config import load_config
from eternalstash.errors import SyncTimeout
from eternalstash.models.config import EternalStashConfig
from eternalstash.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from eternalstash.cache import ResourceCache
    from eternalstash.collector import PodWatcher
    from eternalstash.normalizer import EventNormalizer
    from eternalstash.recorder import UsageRecorder, UsageStore

_STOP_TIMEOUT_SECONDS = 15


class _ComponentError(Exception):
    """A component the service cannot run without failed to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"{component} failed to start: {cause}")
        self.component = component
        self.cause = cause


class EternalStashApp:
    """Owns the pipeline components and drives their lifecycle.

    ``stop()`` may be called at any point, including before ``start()`` and
    more than once.

    Args:
        config: Configuration to run with.  Loaded from the ETERNALSTASH_*
                environment by ``start()`` when omitted.
    """

    def __init__(self, config: EternalStashConfig | None = None) -> None:
        self.config: EternalStashConfig | None = config

        self._k8s_api: object | None = None
        self._store: UsageStore | None = None
        self._recorder: UsageRecorder | None = None
        self._cache: ResourceCache | None = None
        self._normalizer: EventNormalizer | None = None
        self._watcher: PodWatcher | None = None
        self._server: object | None = None
        self._server_task: asyncio.Task[None] | None = None

        self._running = False
        self._stopping = asyncio.Event()
        self._stopped = asyncio.Event()
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def wait_stopped(self) -> None:
        """Block until :meth:`stop` has finished."""
        await self._stopped.wait()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bring every component up in order.

        Raises:
            _ComponentError: the cluster client, the store or the watcher
                could not be started.  main() exits non-zero on it.
        """
        if self.config is None:
            self.config = load_config()

        setup_logging(self.config.log.level, self.config.log.format)
        self._log = get_logger("app")
        self._log.info("eternalstash starting", version=_package_version())

        await self._start_k8s_client()
        await self._start_recorder()
        await self._start_watcher()
        self._running = True

        if await self._wait_for_sync():
            await self._start_rest()
        elif self._stopping.is_set():
            return

        self._log.info("eternalstash started", port=self.config.api.port)

    async def _start_k8s_client(self) -> None:
        """Load cluster credentials and build the CoreV1 API client."""
        assert self._log is not None
        assert self.config is not None
        k8s = self.config.kubernetes
        try:
            # kubernetes-asyncio inspects the environment at import time
            import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]
            from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

            if k8s.credentials == "in-cluster":
                k8s_config.load_incluster_config()
                source = "service account"
            elif k8s.credentials == "kubeconfig":
                await k8s_config.load_kube_config(config_file=k8s.kubeconfig or None)
                source = k8s.kubeconfig or "default kubeconfig"
            else:
                try:
                    k8s_config.load_incluster_config()
                    source = "service account"
                except k8s_config.ConfigException:
                    await k8s_config.load_kube_config()
                    source = "default kubeconfig"

            self._k8s_api = k8s_client.CoreV1Api()
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc
        self._log.info("k8s credentials loaded", mode=k8s.credentials, source=source)

    async def _start_recorder(self) -> None:
        """Open the record store, check it answers, wrap it in a UsageRecorder."""
        assert self._log is not None
        assert self.config is not None
        try:
            from eternalstash.recorder import UsageRecorder, build_store

            store = build_store(self.config.store)
            await store.ping()
            recorder_cfg = self.config.recorder
            self._recorder = UsageRecorder(
                store,
                max_retries=recorder_cfg.max_retries,
                backoff_seconds=recorder_cfg.backoff_seconds,
                backoff_max_seconds=recorder_cfg.backoff_max_seconds,
            )
            self._store = store
        except Exception as exc:
            raise _ComponentError("recorder", exc) from exc
        self._log.info(
            "record store ready",
            database=self.config.store.database,
            collection=self.config.store.collection,
        )

    async def _start_watcher(self) -> None:
        """Wire source, cache and normalizer together and start the watch loop."""
        assert self._log is not None
        assert self.config is not None
        assert self._recorder is not None
        k8s = self.config.kubernetes
        try:
            from eternalstash.cache import ResourceCache
            from eternalstash.collector import KubernetesPodSource, PodWatcher
            from eternalstash.normalizer import EventNormalizer

            source = KubernetesPodSource(
                self._k8s_api,
                namespace=k8s.namespace,
                watch_timeout=k8s.resync_interval,
                request_timeout=k8s.request_timeout,
            )
            self._cache = ResourceCache()
            self._normalizer = EventNormalizer(recorder=self._recorder)
            self._watcher = PodWatcher(source, self._cache)
            self._watcher.add_handler(self._normalizer.handle)
            await self._watcher.start()
        except Exception as exc:
            raise _ComponentError("watcher", exc) from exc
        self._log.info("watching pods", namespace=k8s.namespace or "*", resync_interval=k8s.resync_interval)

    async def _wait_for_sync(self) -> bool:
        """Hold the query API back until the cache is SYNCED, if configured.

        Returns False when the API must not start: the sync timed out or a
        stop was requested meanwhile.  The watcher is never stopped here;
        records keep flowing either way.
        """
        assert self._log is not None
        assert self.config is not None
        assert self._watcher is not None
        if not self.config.api.wait_for_sync:
            return True
        timeout = float(self.config.api.sync_timeout)
        synced = asyncio.ensure_future(self._watcher.wait_until_synced(timeout))
        stopping = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({synced, stopping}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            synced.cancel()
            stopping.cancel()
        if self._stopping.is_set():
            self._log.info("stop requested during cache sync, query api not started")
            return False
        try:
            if not synced.result():
                raise SyncTimeout(timeout)
        except SyncTimeout as exc:
            self._log.error("cache sync timed out, query api not started", error=str(exc))
            return False
        self._log.info("cache synced", entries=len(self._watcher.cache))
        return True

    async def _start_rest(self) -> None:
        """Serve the query API with uvicorn as a background task."""
        assert self._log is not None
        assert self.config is not None
        api_cfg = self.config.api
        try:
            import uvicorn  # type: ignore[import-untyped]

            from eternalstash.api import create_app

            server = uvicorn.Server(
                uvicorn.Config(
                    app=create_app(store=self._store, config=self.config),
                    host=api_cfg.host,
                    port=api_cfg.port,
                    log_config=None,  # structlog owns logging
                    access_log=False,
                )
            )
            self._server_task = asyncio.create_task(server.serve(), name="query-api")
            self._server = server
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc
        self._log.info("query api listening", host=api_cfg.host, port=api_cfg.port)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Tear components down in reverse order, each step isolated."""
        self._stopping.set()
        if self._log is None:
            self._stopped.set()
            return

        log = self._log
        log.info("eternalstash shutting down")
        self._running = False

        if self._server is not None:
            self._server.should_exit = True  # type: ignore[attr-defined]
        if self._server_task is not None:
            if not self._server_task.done():
                self._server_task.cancel()
            await asyncio.gather(self._server_task, return_exceptions=True)
        self._server = None
        self._server_task = None

        await self._stop_component("watcher", self._watcher)
        await self._stop_component("recorder", self._recorder)
        self._watcher = None
        self._recorder = None
        self._k8s_api = None

        log.info("eternalstash stopped", lost_deletes=_lost_deletes(self._cache, self._normalizer))
        self._stopped.set()

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Await ``component.stop()`` with a timeout; log instead of raising."""
        stop = getattr(component, "stop", None)
        if stop is None:
            return
        log = self._log or get_logger("app")
        try:
            await asyncio.wait_for(stop(), timeout=_STOP_TIMEOUT_SECONDS)
        except TimeoutError:
            log.warning("component did not stop in time", component=name, timeout=_STOP_TIMEOUT_SECONDS)
        except Exception as exc:
            log.error("component failed to stop", component=name, error=str(exc))


def _lost_deletes(cache: ResourceCache | None, normalizer: EventNormalizer | None) -> int:
    total = cache.lost_deletes if cache is not None else 0
    if normalizer is not None:
        total += normalizer.lost_deletes
    return total


def _package_version() -> str:
    from eternalstash import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(config: EternalStashConfig | None = None) -> None:
    """Run the service until SIGTERM/SIGINT, then shut it down."""
    app = EternalStashApp(config)
    loop = asyncio.get_running_loop()
    shutdown: asyncio.Task[None] | None = None

    def _on_signal() -> None:
        nonlocal shutdown
        if shutdown is None:
            shutdown = asyncio.create_task(app.stop(), name="shutdown")

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _on_signal)

    try:
        await app.start()
        await app.wait_stopped()
    except _ComponentError as exc:
        get_logger("app").critical("startup failed", component=exc.component, error=str(exc.cause))
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()
