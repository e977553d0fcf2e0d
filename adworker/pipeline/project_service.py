"""
Project State Machine.

The authoritative model of a project's lifecycle:
  DRAFT → QUEUED → GENERATING_IMAGE → IMAGE_READY → GENERATING_VIDEO → COMPLETED
  with FAILED reachable from every in-progress state.

Every write to a project row goes through `ProjectStore.atomic_update`,
which applies status and a settings *patch* together against a versioned
row. Settings are merged, never replaced, so a user editing settings and an
orchestrator re-pointing the active scene cannot lose each other's keys.
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union
from uuid import uuid4

from supabase import create_client, Client

from .errors import NotFoundError, StateConflictError, ValidationError
from .models import (
    Asset,
    AssetType,
    Project,
    ProjectSettings,
    ProjectStatus,
    SettingsPatch,
    can_transition,
)

logger = logging.getLogger(__name__)

CheckFn = Callable[[Project], None]
ExpectedStates = Union[ProjectStatus, Iterable[ProjectStatus], None]

MAX_CAS_RETRIES = 5


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now().isoformat()


def _row_to_project(row: dict) -> Project:
    return Project(
        id=row["id"],
        user_id=row["user_id"],
        title=row.get("title") or "",
        status=row.get("pipeline_status") or ProjectStatus.DRAFT,
        settings=ProjectSettings.model_validate(row.get("settings") or {}),
        settings_version=row.get("settings_version") or 0,
        result_video_url=row.get("result_video_url"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _row_to_asset(row: dict) -> Asset:
    return Asset(
        id=row["id"],
        project_id=row["project_id"],
        type=row["type"],
        provider=row.get("provider") or "",
        storage_url=row["storage_url"],
        meta=row.get("meta") or {},
        created_at=row["created_at"],
    )


# ═════════════════════════════════════════════════════════════════════════════
# Persistence
# ═════════════════════════════════════════════════════════════════════════════

class ProjectStore:
    """Persistence interface consumed by the state machine."""

    async def insert_project(self, row: dict) -> Project:
        raise NotImplementedError

    async def get_project(self, project_id: str) -> Project:
        raise NotImplementedError

    async def atomic_update(
        self,
        project_id: str,
        check: Optional[CheckFn] = None,
        status: Optional[ProjectStatus] = None,
        settings_patch: Optional[dict] = None,
        result_video_url: Optional[str] = None,
    ) -> Project:
        """
        Validate the current row with `check`, then write status, merged
        settings and result URL in one step. Raises NotFoundError.
        """
        raise NotImplementedError

    async def create_asset(self, row: dict) -> Asset:
        raise NotImplementedError

    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        raise NotImplementedError

    async def find_assets(
        self, project_id: str, asset_type: AssetType, newest_first: bool = True
    ) -> list[Asset]:
        raise NotImplementedError


class InMemoryProjectStore(ProjectStore):
    """Process-local store used in mock mode and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._projects: dict[str, dict] = {}
        self._assets: dict[str, dict] = {}
        self._seq = 0

    async def insert_project(self, row: dict) -> Project:
        with self._lock:
            self._projects[row["id"]] = dict(row)
            return _row_to_project(self._projects[row["id"]])

    async def get_project(self, project_id: str) -> Project:
        with self._lock:
            row = self._projects.get(project_id)
            if row is None:
                raise NotFoundError(f"Project {project_id} not found")
            return _row_to_project(row)

    async def atomic_update(
        self,
        project_id: str,
        check: Optional[CheckFn] = None,
        status: Optional[ProjectStatus] = None,
        settings_patch: Optional[dict] = None,
        result_video_url: Optional[str] = None,
    ) -> Project:
        with self._lock:
            row = self._projects.get(project_id)
            if row is None:
                raise NotFoundError(f"Project {project_id} not found")
            if check:
                check(_row_to_project(row))

            updated = dict(row)
            if status is not None:
                updated["pipeline_status"] = status.value
            if settings_patch:
                updated["settings"] = {**(row.get("settings") or {}), **settings_patch}
            if result_video_url is not None:
                updated["result_video_url"] = result_video_url
            updated["settings_version"] = (row.get("settings_version") or 0) + 1
            updated["updated_at"] = _now_iso()

            self._projects[project_id] = updated
            return _row_to_project(updated)

    async def create_asset(self, row: dict) -> Asset:
        with self._lock:
            self._seq += 1
            self._assets[row["id"]] = {**row, "_seq": self._seq}
            return _row_to_asset(row)

    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        with self._lock:
            row = self._assets.get(asset_id)
            return _row_to_asset(row) if row else None

    async def find_assets(
        self, project_id: str, asset_type: AssetType, newest_first: bool = True
    ) -> list[Asset]:
        with self._lock:
            rows = [
                r for r in self._assets.values()
                if r["project_id"] == project_id and r["type"] == asset_type.value
            ]
        rows.sort(key=lambda r: (r["created_at"], r["_seq"]), reverse=newest_first)
        return [_row_to_asset(r) for r in rows]


class SupabaseProjectStore(ProjectStore):
    """
    Supabase (PostgREST) store using the service role key.

    Atomicity comes from compare-and-swap on `settings_version`: the update
    only matches the row version that was read and checked, and a lost race
    re-reads and re-checks.
    """

    def __init__(self, url: str, service_role_key: str):
        if not url or not service_role_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        self._url = url
        self._key = service_role_key
        self._client: Optional[Client] = None

    def _sb(self) -> Client:
        if self._client is None:
            self._client = create_client(self._url, self._key)
        return self._client

    def _fetch_row(self, project_id: str) -> dict:
        result = (
            self._sb().table("projects").select("*").eq("id", project_id).limit(1).execute()
        )
        if not result.data:
            raise NotFoundError(f"Project {project_id} not found")
        return result.data[0]

    async def insert_project(self, row: dict) -> Project:
        result = await asyncio.to_thread(
            lambda: self._sb().table("projects").insert(row).execute()
        )
        return _row_to_project(result.data[0])

    async def get_project(self, project_id: str) -> Project:
        row = await asyncio.to_thread(self._fetch_row, project_id)
        return _row_to_project(row)

    def _atomic_update_sync(
        self,
        project_id: str,
        check: Optional[CheckFn],
        status: Optional[ProjectStatus],
        settings_patch: Optional[dict],
        result_video_url: Optional[str],
    ) -> Project:
        for attempt in range(MAX_CAS_RETRIES):
            row = self._fetch_row(project_id)
            if check:
                check(_row_to_project(row))

            version = row.get("settings_version") or 0
            update: dict[str, Any] = {
                "settings_version": version + 1,
                "updated_at": _now_iso(),
            }
            if status is not None:
                update["pipeline_status"] = status.value
            if settings_patch:
                update["settings"] = {**(row.get("settings") or {}), **settings_patch}
            if result_video_url is not None:
                update["result_video_url"] = result_video_url

            result = (
                self._sb().table("projects")
                .update(update)
                .eq("id", project_id)
                .eq("settings_version", version)
                .execute()
            )
            if result.data:
                return _row_to_project(result.data[0])

            logger.warning(
                f"Project {project_id} changed concurrently (version {version}), "
                f"retrying update ({attempt + 1}/{MAX_CAS_RETRIES})"
            )

        raise StateConflictError(
            f"Project {project_id} kept changing; gave up after {MAX_CAS_RETRIES} attempts"
        )

    async def atomic_update(
        self,
        project_id: str,
        check: Optional[CheckFn] = None,
        status: Optional[ProjectStatus] = None,
        settings_patch: Optional[dict] = None,
        result_video_url: Optional[str] = None,
    ) -> Project:
        return await asyncio.to_thread(
            self._atomic_update_sync,
            project_id, check, status, settings_patch, result_video_url,
        )

    async def create_asset(self, row: dict) -> Asset:
        result = await asyncio.to_thread(
            lambda: self._sb().table("assets").insert(row).execute()
        )
        return _row_to_asset(result.data[0])

    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        result = await asyncio.to_thread(
            lambda: self._sb().table("assets").select("*").eq("id", asset_id).limit(1).execute()
        )
        return _row_to_asset(result.data[0]) if result.data else None

    async def find_assets(
        self, project_id: str, asset_type: AssetType, newest_first: bool = True
    ) -> list[Asset]:
        result = await asyncio.to_thread(
            lambda: (
                self._sb().table("assets")
                .select("*")
                .eq("project_id", project_id)
                .eq("type", asset_type.value)
                .order("created_at", desc=newest_first)
                .execute()
            )
        )
        return [_row_to_asset(row) for row in result.data]


# ═════════════════════════════════════════════════════════════════════════════
# State Machine
# ═════════════════════════════════════════════════════════════════════════════

def _as_state_set(expected: ExpectedStates) -> Optional[frozenset]:
    if expected is None:
        return None
    if isinstance(expected, ProjectStatus):
        return frozenset({expected})
    return frozenset(expected)


class ProjectService:
    """Atomic transitions and settings edits over a ProjectStore."""

    def __init__(self, store: ProjectStore):
        self.store = store

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_project(self, project_id: str) -> Project:
        return await self.store.get_project(project_id)

    async def find_assets(
        self, project_id: str, asset_type: AssetType, newest_first: bool = True
    ) -> list[Asset]:
        return await self.store.find_assets(project_id, asset_type, newest_first)

    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        return await self.store.get_asset(asset_id)

    # ── Writes ───────────────────────────────────────────────────────────

    async def create_project(
        self,
        user_id: str,
        title: str = "",
        settings: Optional[SettingsPatch] = None,
    ) -> Project:
        now = _now_iso()
        row = {
            "id": str(uuid4()),
            "user_id": user_id,
            "title": title,
            "pipeline_status": ProjectStatus.DRAFT.value,
            "settings": settings.to_patch() if settings else {},
            "settings_version": 0,
            "result_video_url": None,
            "created_at": now,
            "updated_at": now,
        }
        project = await self.store.insert_project(row)
        logger.info(f"Project {project.id} created for user {user_id}")
        return project

    async def transition(
        self,
        project_id: str,
        next_state: ProjectStatus,
        expected: ExpectedStates = None,
        settings_patch: Optional[SettingsPatch] = None,
        result_video_url: Optional[str] = None,
    ) -> Project:
        """
        Move a project to `next_state`, applying `settings_patch` in the same
        atomic write.

        Raises StateConflictError if the current status is not in `expected`
        or the move is not an edge of the lifecycle graph, and NotFoundError
        if the project does not exist.
        """
        expected_states = _as_state_set(expected)
        patch = settings_patch.to_patch() if settings_patch else {}

        if next_state == ProjectStatus.FAILED and not (
            patch.get("lastError") and patch.get("failedAt")
        ):
            raise ValidationError("Transition to FAILED must record lastError and failedAt")

        def check(project: Project) -> None:
            if expected_states is not None and project.status not in expected_states:
                names = ", ".join(sorted(s.value for s in expected_states))
                raise StateConflictError(
                    f"Project {project_id} is {project.status.value}, expected {names}"
                )
            if not can_transition(project.status, next_state):
                raise StateConflictError(
                    f"Project {project_id} cannot move "
                    f"{project.status.value} → {next_state.value}"
                )

        project = await self.store.atomic_update(
            project_id,
            check=check,
            status=next_state,
            settings_patch=patch,
            result_video_url=result_video_url,
        )
        logger.info(f"Project {project_id} → {next_state.value}")
        return project

    async def fail(self, project_id: str, error_message: str) -> Project:
        """Move a project to FAILED, recording lastError and failedAt."""
        return await self.transition(
            project_id,
            ProjectStatus.FAILED,
            settings_patch=SettingsPatch(last_error=error_message, failed_at=_now_iso()),
        )

    async def update_settings(self, project_id: str, patch: SettingsPatch) -> Project:
        """Merge a user edit into settings without touching status."""
        return await self.store.atomic_update(project_id, settings_patch=patch.to_patch())

    async def create_asset(
        self,
        project_id: str,
        asset_type: AssetType,
        provider: str,
        storage_url: str,
        meta: Optional[dict] = None,
    ) -> Asset:
        row = {
            "id": str(uuid4()),
            "project_id": project_id,
            "type": asset_type.value,
            "provider": provider,
            "storage_url": storage_url,
            "meta": meta or {},
            "created_at": _now_iso(),
        }
        asset = await self.store.create_asset(row)
        logger.info(f"Asset {asset.id} ({asset_type.value}) saved for project {project_id}")
        return asset

    async def select_scene(self, project_id: str, asset_id: str) -> Project:
        """
        Point the project's active scene at one of its existing scene assets,
        restoring the prompt that produced it.
        """
        asset = await self.store.get_asset(asset_id)
        if asset is None or asset.project_id != project_id:
            raise ValidationError("Asset not found in this project")
        if asset.type != AssetType.IMAGE_SCENE:
            raise ValidationError(f"Asset type must be IMAGE_SCENE, got {asset.type.value}")

        patch = SettingsPatch(active_scene_asset_id=asset.id)
        if asset.meta.get("prompt"):
            patch.scene_prompt = asset.meta["prompt"]
        return await self.update_settings(project_id, patch)
