from __future__ import annotations

import logging
from dataclasses import dataclass, field

from workspace_sync.config import Settings, settings
from workspace_sync.connectivity import ConnectivityMonitor
from workspace_sync.domain.creation_plan import CreationPlan, PlannedCreate, plan_creation
from workspace_sync.errors import CorruptQueueError, SyncError, TransientNetworkError
from workspace_sync.integrations.ai_generation import AIGenerationAPI
from workspace_sync.integrations.items_api import ItemsAPI
from workspace_sync.models import utc_now
from workspace_sync.notifications import LoggingNotifier, Notification, Notifier
from workspace_sync.offline_log import OfflineOperationLog
from workspace_sync.schemas_items import MUTABLE_FIELDS, Item, ItemCreate, new_temp_id
from workspace_sync.schemas_sync import CreateOperation, CreatePayload
from workspace_sync.stores.item_store import ItemStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImportFailure:
    temp_id: str
    title: str
    error: SyncError


@dataclass
class ImportOutcome:
    workspace_id: str
    created: list[str] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    failed: list[ImportFailure] = field(default_factory=list)
    # Set when nothing could be planned (generation or plan failure).
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed


class AIImportService:
    """Turns generated proposals into items, parents before children.

    Proposal temp ids are mapped to local temp ids, then to server ids as each
    create is confirmed. After a transient failure every remaining create goes
    to the offline log; a rejected create takes its whole subtree with it.
    """

    def __init__(
        self,
        *,
        ai_api: AIGenerationAPI,
        api: ItemsAPI,
        store: ItemStore,
        log: OfflineOperationLog,
        notifier: Notifier | None = None,
        connectivity: ConnectivityMonitor | None = None,
        cfg: Settings | None = None,
    ) -> None:
        self._ai = ai_api
        self._api = api
        self._store = store
        self._log = log
        self._notifier = notifier or LoggingNotifier()
        self._connectivity = connectivity
        self._cfg = cfg or settings

    async def generate(
        self,
        topic: str,
        workspace_id: str,
        *,
        user_id: str | None = None,
        model: str | None = None,
    ) -> ImportOutcome:
        try:
            proposals = await self._ai.generate(
                topic=topic,
                workspace_id=workspace_id,
                user_id=user_id or self._cfg.user_id,
                model=model or self._cfg.ai_default_model,
            )
            logger.info("generated %s proposals workspace_id=%s", len(proposals), workspace_id)
            plan = plan_creation(
                proposals,
                known_ids=lambda item_id: self._store.get(item_id) is not None,
                mint_id=lambda: new_temp_id(self._cfg.temp_id_prefix),
            )
        except SyncError as e:
            logger.error("generation failed workspace_id=%s: %s", workspace_id, e)
            self._notifier.notify(
                Notification(
                    level="error",
                    message="Content could not be generated",
                    workspace_id=workspace_id,
                    error_kind=e.kind,
                )
            )
            return ImportOutcome(workspace_id=workspace_id, error=e)
        return await self.apply_plan(workspace_id, plan)

    async def apply_plan(self, workspace_id: str, plan: CreationPlan) -> ImportOutcome:
        outcome = ImportOutcome(workspace_id=workspace_id)
        # Planned temp id -> id the item currently has locally (temp or server).
        id_map: dict[str, str] = {}
        discarded: set[str] = set()
        deferred = await self._must_defer(workspace_id)

        for step in plan.steps:
            if step.temp_id in discarded:
                continue
            parent_id = self._parent_for(step, id_map)
            local_id = new_temp_id(self._cfg.temp_id_prefix)
            op = self._insert(workspace_id, local_id, parent_id, step)
            id_map[step.temp_id] = local_id

            if not deferred and not (parent_id and self._store.is_unconfirmed(parent_id)):
                try:
                    created = await self._api.create_item(
                        workspace_id,
                        ItemCreate(
                            type=op.data.type,
                            title=op.data.title,
                            content=op.data.content,
                            youtube_url=op.data.youtube_url,
                            parent_id=parent_id,
                            order_index=op.data.order_index,
                        ),
                    )
                except TransientNetworkError as e:
                    logger.warning("import create not delivered, queueing the rest: %s", e)
                    deferred = True
                except SyncError as e:
                    logger.error("import create rejected temp_id=%s: %s", step.temp_id, e)
                    self._discard(plan, step, local_id, e, id_map, discarded, outcome)
                    continue
                else:
                    current = self._store.get(local_id)
                    issued_at = current.updated_at if current is not None else None
                    self._store.remap_id(local_id, created.id)
                    _ = self._store.confirm(
                        created.id,
                        created.model_dump(include=set(MUTABLE_FIELDS) | {"updated_at"}),
                        issued_at=issued_at,
                    )
                    id_map[step.temp_id] = created.id
                    outcome.created.append(created.id)
                    continue

            try:
                _ = await self._log.enqueue(op)
            except CorruptQueueError as e:
                logger.error("import create could not be queued temp_id=%s: %s", step.temp_id, e)
                self._discard(plan, step, local_id, e, id_map, discarded, outcome)
                continue
            outcome.queued.append(local_id)

        if outcome.failed:
            self._notifier.notify(
                Notification(
                    level="error",
                    message=f"{len(outcome.failed)} generated items could not be created",
                    workspace_id=workspace_id,
                    error_kind=outcome.failed[0].error.kind,
                )
            )
        logger.info(
            "import finished workspace_id=%s created=%s queued=%s failed=%s",
            workspace_id,
            len(outcome.created),
            len(outcome.queued),
            len(outcome.failed),
        )
        return outcome

    def _parent_for(self, step: PlannedCreate, id_map: dict[str, str]) -> str | None:
        if step.parent_ref is None:
            return None
        if step.parent_is_planned:
            return id_map[step.parent_ref]
        return self._store.resolve_id(step.parent_ref)

    def _insert(
        self, workspace_id: str, local_id: str, parent_id: str | None, step: PlannedCreate
    ) -> CreateOperation:
        proposal = step.proposal
        order_index = self._store.next_order_index(workspace_id, parent_id)
        now = utc_now()
        _ = self._store.apply_optimistic(
            Item(
                id=local_id,
                workspace_id=workspace_id,
                type=proposal.type,
                title=proposal.title,
                content=proposal.content,
                youtube_url=proposal.youtube_url,
                parent_id=parent_id,
                order_index=order_index,
                created_at=now,
                updated_at=now,
            ),
            "create",
        )
        return CreateOperation(
            id=local_id,
            workspace_id=workspace_id,
            data=CreatePayload(
                type=proposal.type,
                title=proposal.title,
                content=proposal.content,
                youtube_url=proposal.youtube_url,
                parent_id=parent_id,
                order_index=order_index,
            ),
        )

    async def _must_defer(self, workspace_id: str) -> bool:
        if self._cfg.batch_mode:
            return True
        if self._connectivity is not None and not self._connectivity.is_online:
            return True
        # Older queued changes of the workspace replay first.
        try:
            return await self._log.count(workspace_id) > 0
        except CorruptQueueError:
            return True

    def _discard(
        self,
        plan: CreationPlan,
        step: PlannedCreate,
        local_id: str,
        error: SyncError,
        id_map: dict[str, str],
        discarded: set[str],
        outcome: ImportOutcome,
    ) -> None:
        """Drop a failed create together with every planned descendant."""
        titles = {s.temp_id: s.proposal.title for s in plan.steps}
        _ = self._store.remove(local_id)
        del id_map[step.temp_id]
        outcome.failed.append(ImportFailure(step.temp_id, step.proposal.title, error))
        for descendant in sorted(plan.descendants_of(step.temp_id)):
            discarded.add(descendant)
            outcome.failed.append(ImportFailure(descendant, titles[descendant], error))
