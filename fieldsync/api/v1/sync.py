"""
Local control API used by the application shell to drive the sync core
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, status
from datetime import date
from typing import List, Optional
import logging

from fieldsync.core.log_buffer import RecentLogBuffer
from fieldsync.services.connectivity import ConnectivityState, PushNetworkStatusSource
from fieldsync.services.sync import SyncCoordinator, SyncResult
from fieldsync.schemas.sync import (
    ConnectivityResponse,
    ConnectivityUpdate,
    DailyRoutesResponse,
    DownSyncRequest,
    LogEntryResponse,
    StartRequest,
    SyncResultResponse,
    SyncRunResponse,
    SyncStatusResponse
)

logger = logging.getLogger(__name__)
router = APIRouter()


def get_coordinator(request: Request) -> SyncCoordinator:
    return request.app.state.coordinator


def get_log_buffer(request: Request) -> RecentLogBuffer:
    return request.app.state.log_buffer


def _result_response(result: SyncResult) -> SyncResultResponse:
    return SyncResultResponse(**result.to_dict())


@router.post("/start", response_model=SyncStatusResponse)
async def start_sync(
    start_request: StartRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    """Attach the coordinator to connectivity changes for a reader"""
    await coordinator.start(start_request.reader_id)
    return await _status(coordinator)


@router.post("/stop")
async def stop_sync(coordinator: SyncCoordinator = Depends(get_coordinator)):
    await coordinator.stop()
    return {"started": False}


@router.post("/down", response_model=SyncResultResponse)
async def sync_down(
    down_request: Optional[DownSyncRequest] = None,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    """Pull the route graph for the given or the started reader"""
    reader_id = down_request.reader_id if down_request else None
    try:
        result = await coordinator.sync_down(reader_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return _result_response(result)


@router.post("/up", response_model=SyncResultResponse)
async def sync_up(coordinator: SyncCoordinator = Depends(get_coordinator)):
    """Push pending readings"""
    result = await coordinator.sync_up()
    return _result_response(result)


@router.post("/cancel")
async def cancel_sync(coordinator: SyncCoordinator = Depends(get_coordinator)):
    cancelled = coordinator.cancel()
    return {"cancelled": cancelled}


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(coordinator: SyncCoordinator = Depends(get_coordinator)):
    return await _status(coordinator)


async def _status(coordinator: SyncCoordinator) -> SyncStatusResponse:
    try:
        current = await coordinator.status()
    except Exception as e:
        logger.error(f"Failed to read sync status: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to read sync status: {str(e)}"
        )

    current['connectivity'] = ConnectivityResponse(**current['connectivity'])
    return SyncStatusResponse(**current)


@router.get("/history", response_model=List[SyncRunResponse])
async def get_sync_history(
    limit: int = Query(20, ge=1, le=200),
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    """Most recent sync runs, newest first"""
    try:
        runs = await coordinator.history(limit)
    except Exception as e:
        logger.error(f"Failed to read sync history: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to read sync history: {str(e)}"
        )

    return [SyncRunResponse(**run.to_dict()) for run in runs]


@router.get("/routes/today", response_model=DailyRoutesResponse)
async def get_daily_routes(coordinator: SyncCoordinator = Depends(get_coordinator)):
    """Routes assigned to the started reader for the current weekday"""
    if not coordinator.reader_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Sync has not been started for a reader"
        )

    today = date.today()
    routes = await coordinator.fetch_daily_routes(today)

    return DailyRoutesResponse(
        reader_id=coordinator.reader_id,
        weekday=coordinator.down_engine.weekday_label(today),
        routes=[route.model_dump() for route in routes]
    )


@router.put("/connectivity", response_model=ConnectivityResponse)
async def update_connectivity(update: ConnectivityUpdate, request: Request):
    """Network status pushed by the shell from the OS network API"""
    source = request.app.state.network_source
    if not isinstance(source, PushNetworkStatusSource):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Connectivity is probed by the service and cannot be pushed"
        )

    state = ConnectivityState(
        connected=update.connected,
        internet_reachable=update.internet_reachable
    )
    source.publish(state)
    return ConnectivityResponse(**state.to_dict())


@router.get("/logs", response_model=List[LogEntryResponse])
async def get_recent_logs(
    limit: int = Query(50, ge=1, le=1000),
    level: Optional[str] = None,
    log_buffer: RecentLogBuffer = Depends(get_log_buffer)
):
    """Recent log records kept in memory, newest first"""
    return [LogEntryResponse(**entry) for entry in log_buffer.recent(limit, level)]


@router.websocket("/ws/connectivity")
async def connectivity_updates(websocket: WebSocket):
    state = websocket.app.state
    await state.broadcaster.serve(websocket, state.coordinator.monitor.current())
