"""Wiring for one client session.

``build_context`` assembles the store, the offline log, the backend clients
and the services that share them. Every collaborator can be injected, which
is how tests swap in fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from workspace_sync.config import Settings, settings
from workspace_sync.connectivity import ConnectivityMonitor
from workspace_sync.db import get_engine
from workspace_sync.domain.retry_policy import RetryPolicy
from workspace_sync.integrations.ai_generation import AIGenerationAPI, HttpxAIGenerationAPI
from workspace_sync.integrations.items_api import HttpxItemsAPI, ItemsAPI
from workspace_sync.notifications import LoggingNotifier, Notification, Notifier
from workspace_sync.offline_log import OfflineOperationLog
from workspace_sync.schemas_sync import PendingOperation
from workspace_sync.services.ai_import import AIImportService
from workspace_sync.services.move_coordinator import MoveCoordinator
from workspace_sync.services.mutations import MutationService
from workspace_sync.services.sync_engine import SyncEngine
from workspace_sync.stores.item_store import ItemStore
from workspace_sync.stores.kv_store import KeyValueStore, SqlKeyValueStore


def configure_logging(cfg: Settings | None = None) -> None:
    cfg = cfg or settings
    logging.basicConfig(level=getattr(logging, cfg.log_level.upper(), logging.INFO))


@dataclass
class ClientContext:
    settings: Settings
    store: ItemStore
    log: OfflineOperationLog
    api: ItemsAPI
    ai_api: AIGenerationAPI
    connectivity: ConnectivityMonitor
    notifier: Notifier
    sync_engine: SyncEngine
    moves: MoveCoordinator
    mutations: MutationService
    ai_import: AIImportService

    async def aclose(self) -> None:
        await self.sync_engine.aclose()


def build_context(
    cfg: Settings | None = None,
    *,
    kv_store: KeyValueStore | None = None,
    api: ItemsAPI | None = None,
    ai_api: AIGenerationAPI | None = None,
    connectivity: ConnectivityMonitor | None = None,
    notifier: Notifier | None = None,
    retry_policy: RetryPolicy | None = None,
) -> ClientContext:
    cfg = cfg or settings
    notifier = notifier or LoggingNotifier()
    connectivity = connectivity or ConnectivityMonitor()
    retry_policy = retry_policy or RetryPolicy.from_settings(cfg)
    store = ItemStore(temp_id_prefix=cfg.temp_id_prefix)

    def _on_evict(evicted: list[PendingOperation]) -> None:
        for op in evicted:
            notifier.notify(
                Notification(
                    level="warning",
                    message="Too many pending changes; the oldest one was dropped",
                    workspace_id=op.workspace_id,
                    item_id=op.id,
                )
            )

    log = OfflineOperationLog(
        kv_store or SqlKeyValueStore(get_engine(cfg.database_url)),
        storage_key=cfg.queue_storage_key,
        max_operations=cfg.queue_max_operations,
        on_evict=_on_evict,
    )
    api = api or HttpxItemsAPI(
        base_url=cfg.api_base_url,
        user_id=cfg.user_id,
        timeout_seconds=cfg.api_timeout_seconds,
    )
    ai_api = ai_api or HttpxAIGenerationAPI(
        base_url=cfg.ai_base_url,
        timeout_seconds=cfg.ai_timeout_seconds,
    )
    sync_engine = SyncEngine(
        api=api,
        store=store,
        log=log,
        notifier=notifier,
        connectivity=connectivity,
        retry_policy=retry_policy,
        cfg=cfg,
    )
    return ClientContext(
        settings=cfg,
        store=store,
        log=log,
        api=api,
        ai_api=ai_api,
        connectivity=connectivity,
        notifier=notifier,
        sync_engine=sync_engine,
        moves=MoveCoordinator(
            api=api,
            store=store,
            log=log,
            sync_engine=sync_engine,
            notifier=notifier,
            connectivity=connectivity,
            retry_policy=retry_policy,
            cfg=cfg,
        ),
        mutations=MutationService(
            api=api,
            store=store,
            log=log,
            notifier=notifier,
            connectivity=connectivity,
            cfg=cfg,
        ),
        ai_import=AIImportService(
            ai_api=ai_api,
            api=api,
            store=store,
            log=log,
            notifier=notifier,
            connectivity=connectivity,
            cfg=cfg,
        ),
    )
