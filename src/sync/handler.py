from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import httpx

from common.connectivity import Connectivity, http_probe
from common.envelope import codec_for_scheme
from common.remote import RemoteClient
from state.sqlite_store import SqliteStore

from .config import SyncConfig
from .orchestrator import SyncOrchestrator, SyncState
from .periodic import PeriodicSync
from .service import SyncService


ENV_LOG_LEVEL = "SYNC_LOG_LEVEL"
ENV_PROBE_URL = "SYNC_PROBE_URL"  # optional; defaults to the API base URL
PROBE_TTL_SECONDS = 5.0

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    name = (level or os.environ.get(ENV_LOG_LEVEL) or "INFO").upper()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=LOG_FORMAT)


def build_service(
    config: SyncConfig,
    *,
    connectivity: Optional[Connectivity] = None,
    client: Optional[httpx.Client] = None,
) -> SyncService:
    """Wire store, remote client, orchestrator and service for `config`."""
    if connectivity is None:
        probe_url = os.environ.get(ENV_PROBE_URL) or config.base_url
        connectivity = Connectivity(
            online=True,
            probe=http_probe(probe_url, timeout=config.page_timeout, client=client),
            ttl=PROBE_TTL_SECONDS,
        )

    store = SqliteStore(config.db_path)
    codec = codec_for_scheme(config.envelope_scheme, key=config.legacy_key_bytes())
    remote = RemoteClient(
        config.base_url,
        codec=codec,
        connectivity=connectivity,
        timeout=config.page_timeout,
        max_retries=config.max_retries,
        client=client,
    )
    orchestrator = SyncOrchestrator(store, remote, connectivity=connectivity, config=config)
    return SyncService(store, remote, orchestrator, connectivity)


def run_once(config: Optional[SyncConfig] = None, **wiring: Any) -> Dict[str, Any]:
    """Initialize the store, run a single pass and summarize it."""
    cfg = config or SyncConfig.from_env()
    service = build_service(cfg, **wiring)
    try:
        service.initialize()
        result = service.start_sync()
        snap = service.snapshot()
    finally:
        service.close()

    if result is None:
        return {"ok": False, "note": "sync already in progress"}
    return {
        "ok": result.state is SyncState.COMPLETED,
        "state": result.state.value,
        "fetched": result.fetched,
        "pages": result.pages,
        "replayed": result.replay.replayed if result.replay else 0,
        "skipped": len(result.replay.failed) if result.replay else 0,
        "total_records": snap.total_records,
        "online": snap.is_online,
        "error": result.error,
    }


def run_forever(config: Optional[SyncConfig] = None) -> None:
    """Sync every `sync_interval_ms` until interrupted."""
    cfg = config or SyncConfig.from_env()
    service = build_service(cfg)
    service.initialize()
    ticker = PeriodicSync(service.start_sync, cfg.sync_interval, run_immediately=True)
    logger.info("Periodic sync every %.1fs against %s", cfg.sync_interval, cfg.base_url)
    try:
        with ticker:
            ticker.wait()
    except KeyboardInterrupt:
        logger.info("Stopping periodic sync")
    finally:
        service.close()


def main() -> None:
    configure_logging()
    run_forever()


if __name__ == "__main__":
    main()
