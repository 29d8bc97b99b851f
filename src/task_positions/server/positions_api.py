"""Task ordering endpoints.

This module provides a FastAPI router for placing, moving, removing and
rebalancing the tasks of a job.  It is mounted under
``/api/v1/jobs/{job_id}/tasks`` by :func:`create_app`.  Subtask lists are
addressed with the ``parent_id`` query parameter.

``POST /reorder`` applies a batch of relative moves all-or-nothing, and a
move body carrying ``to_parent_id`` re-parents the task.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

from ..positioning.errors import (
    ContractViolation,
    DuplicateItemError,
    KeyCollisionError,
    LoadSupersededError,
    PersistenceError,
    PositioningError,
    UnknownItemError,
)
from ..positioning.model import Move, container_id_for


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class PlacementRequest(BaseModel):
    after_id: Optional[str] = None
    before_id: Optional[str] = None
    position: Optional[Literal["first", "last"]] = None


class CreateTaskPositionRequest(PlacementRequest):
    id: str = Field(min_length=1)


class MoveTaskPositionRequest(PlacementRequest):
    # Present (even as null) means re-parent; null targets the job's top level.
    to_parent_id: Optional[str] = None


class BatchMoveItem(PlacementRequest):
    id: str = Field(min_length=1)


class BatchMoveRequest(BaseModel):
    moves: list[BatchMoveItem] = Field(min_length=1)


class TaskPositionResponse(BaseModel):
    task: dict[str, Any]


class TaskPositionListResponse(BaseModel):
    container_id: str
    tasks: list[dict[str, Any]]
    total: int


class BatchMoveResponse(BaseModel):
    container_id: str
    moved: list[dict[str, Any]]
    tasks: list[dict[str, Any]]


class RebalanceResponse(BaseModel):
    container_id: str
    rebalanced: bool
    tasks_checked: int


class EventListResponse(BaseModel):
    events: list[dict[str, Any]]


def _http_error(exc: PositioningError) -> HTTPException:
    if isinstance(exc, UnknownItemError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (DuplicateItemError, KeyCollisionError, LoadSupersededError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ContractViolation):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, PersistenceError):
        logger.warning("Persistence failure: {}", exc)
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_positions_router(get_engine: Any) -> APIRouter:
    """Create the task ordering router.

    Parameters
    ----------
    get_engine:
        A callable ``(project_dir_param: str | None) -> PositionEngine`` that
        resolves the engine for the current request's project directory.
    """
    router = APIRouter(prefix="/api/v1/jobs/{job_id}/tasks", tags=["task-positions"])

    @router.get("", response_model=TaskPositionListResponse)
    async def list_positions(
        job_id: str,
        parent_id: Optional[str] = Query(None),
        project_dir: Optional[str] = Query(None),
    ) -> TaskPositionListResponse:
        engine = get_engine(project_dir)
        container_id = container_id_for(job_id, parent_id)
        try:
            items = await engine.list_items(container_id)
        except PositioningError as exc:
            raise _http_error(exc) from exc
        data = [item.to_dict() for item in items]
        return TaskPositionListResponse(container_id=container_id, tasks=data, total=len(data))

    @router.post("", response_model=TaskPositionResponse, status_code=201)
    async def create_position(
        job_id: str,
        body: CreateTaskPositionRequest,
        parent_id: Optional[str] = Query(None),
        project_dir: Optional[str] = Query(None),
    ) -> TaskPositionResponse:
        engine = get_engine(project_dir)
        try:
            item = await engine.insert(
                container_id_for(job_id, parent_id),
                body.id,
                after_id=body.after_id,
                before_id=body.before_id,
                position=body.position,
            )
        except PositioningError as exc:
            raise _http_error(exc) from exc
        return TaskPositionResponse(task=item.to_dict())

    @router.post("/rebalance", response_model=RebalanceResponse)
    async def rebalance(
        job_id: str,
        parent_id: Optional[str] = Query(None),
        force: bool = Query(True),
        project_dir: Optional[str] = Query(None),
    ) -> RebalanceResponse:
        engine = get_engine(project_dir)
        container_id = container_id_for(job_id, parent_id)
        try:
            changed = await engine.rebalance(container_id, force=force)
            items = await engine.list_items(container_id)
        except PositioningError as exc:
            raise _http_error(exc) from exc
        return RebalanceResponse(container_id=container_id, rebalanced=changed, tasks_checked=len(items))

    @router.post("/reload", response_model=TaskPositionListResponse)
    async def reload(
        job_id: str,
        parent_id: Optional[str] = Query(None),
        project_dir: Optional[str] = Query(None),
    ) -> TaskPositionListResponse:
        engine = get_engine(project_dir)
        container_id = container_id_for(job_id, parent_id)
        try:
            await engine.reload(container_id)
            items = await engine.list_items(container_id)
        except PositioningError as exc:
            raise _http_error(exc) from exc
        data = [item.to_dict() for item in items]
        return TaskPositionListResponse(container_id=container_id, tasks=data, total=len(data))

    @router.get("/events", response_model=EventListResponse)
    async def list_events(
        job_id: str,
        parent_id: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=1000),
        project_dir: Optional[str] = Query(None),
    ) -> EventListResponse:
        engine = get_engine(project_dir)
        container_id = container_id_for(job_id, parent_id)
        events = [e for e in engine.get_recent_events(limit=limit * 5) if e.get("container_id") == container_id]
        return EventListResponse(events=events[-limit:])

    @router.post("/reorder", response_model=BatchMoveResponse)
    async def batch_move(
        job_id: str,
        body: BatchMoveRequest,
        parent_id: Optional[str] = Query(None),
        project_dir: Optional[str] = Query(None),
    ) -> BatchMoveResponse:
        """Apply every move or none of them."""
        engine = get_engine(project_dir)
        container_id = container_id_for(job_id, parent_id)
        try:
            moves = [
                Move(m.id, after_id=m.after_id, before_id=m.before_id, position=m.position)
                for m in body.moves
            ]
            moved = await engine.batch_move(container_id, moves)
            items = await engine.list_items(container_id)
        except PositioningError as exc:
            raise _http_error(exc) from exc
        return BatchMoveResponse(
            container_id=container_id,
            moved=[item.to_dict() for item in moved],
            tasks=[item.to_dict() for item in items],
        )

    @router.post("/{task_id}/move", response_model=TaskPositionResponse)
    async def move_position(
        job_id: str,
        task_id: str,
        body: MoveTaskPositionRequest,
        parent_id: Optional[str] = Query(None),
        project_dir: Optional[str] = Query(None),
    ) -> TaskPositionResponse:
        engine = get_engine(project_dir)
        target = None
        if "to_parent_id" in body.model_fields_set:
            target = container_id_for(job_id, body.to_parent_id)
        try:
            item = await engine.move(
                container_id_for(job_id, parent_id),
                task_id,
                after_id=body.after_id,
                before_id=body.before_id,
                position=body.position,
                to_container_id=target,
            )
        except PositioningError as exc:
            raise _http_error(exc) from exc
        return TaskPositionResponse(task=item.to_dict())

    @router.delete("/{task_id}")
    async def delete_position(
        job_id: str,
        task_id: str,
        parent_id: Optional[str] = Query(None),
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, str]:
        engine = get_engine(project_dir)
        try:
            await engine.remove(container_id_for(job_id, parent_id), task_id)
        except PositioningError as exc:
            raise _http_error(exc) from exc
        return {"status": "ok", "task_id": task_id}

    return router
