"""Generation, task and history endpoints."""

from typing import Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from starlette.responses import JSONResponse

from pagegen.models import FINISHED_TASK_STATUSES
from pagegen.workflow import Services, parse_generation_request, run_generation

api_router = APIRouter(prefix="/api", tags=["pages"])


@api_router.post("/generate-page")
async def generate_page(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    """Queue a landing page generation and return its task id."""
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")

    try:
        generation = parse_generation_request(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    state = request.app.state
    task = state.task_store.create("Task queued", keyword=generation.keyword)
    services = Services(
        tasks=state.task_store,
        generator=state.generator,
        publisher=state.publisher,
    )
    background_tasks.add_task(run_generation, task.id, generation, services)

    return JSONResponse(
        content={"task_id": task.id, "status": task.status, "message": task.message},
        status_code=202,
    )


@api_router.get("/tasks/{task_id}")
async def get_task(request: Request, task_id: str) -> Dict[str, object]:
    task = request.app.state.task_store.get(task_id)
    if task is None:
        raise HTTPException(
            status_code=404,
            detail=f"Task {task_id} not found; tasks are kept in memory only",
        )
    return task.to_dict()


@api_router.post("/tasks/{task_id}/pause")
async def pause_task(request: Request, task_id: str) -> Dict[str, object]:
    task_store = request.app.state.task_store
    task = task_store.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    if not task_store.pause(task_id):
        raise HTTPException(
            status_code=409,
            detail="Task cannot be paused: it is already paused or finished",
        )
    return {"success": True, "message": "Task paused", "task": task.to_dict()}


@api_router.post("/tasks/{task_id}/resume")
async def resume_task(request: Request, task_id: str) -> Dict[str, object]:
    task_store = request.app.state.task_store
    task = task_store.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    if not task_store.resume(task_id):
        raise HTTPException(status_code=409, detail="Task is not paused")
    return {"success": True, "message": "Task resumed", "task": task.to_dict()}


@api_router.get("/history")
async def list_history(
    request: Request,
    limit: Optional[int] = None,
    keyword: Optional[str] = None,
    status: Optional[str] = None,
) -> Dict[str, object]:
    """List finished tasks, newest first."""
    history = request.app.state.history_store
    if status is not None and status not in FINISHED_TASK_STATUSES:
        raise HTTPException(status_code=400, detail="status must be completed or failed")

    if keyword:
        records = history.search(keyword)
    elif status:
        records = history.filter_by_status(status)
    else:
        records = history.all()
    if keyword and status:
        records = [r for r in records if r.status == status]
    if limit is not None:
        if limit <= 0:
            raise HTTPException(status_code=400, detail="limit must be a positive integer")
        records = records[:limit]

    items: List[Dict[str, object]] = [r.to_dict() for r in records]
    return {"total": len(items), "records": items}


@api_router.delete("/history/{task_id}")
async def delete_history_record(request: Request, task_id: str) -> Dict[str, object]:
    if not request.app.state.history_store.delete(task_id):
        raise HTTPException(status_code=404, detail=f"History record {task_id} not found")
    return {"success": True, "message": "History record deleted"}


@api_router.delete("/history")
async def clear_history(request: Request) -> Dict[str, object]:
    count = request.app.state.history_store.clear()
    return {"success": True, "message": f"Cleared {count} history record(s)", "count": count}
