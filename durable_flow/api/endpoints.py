"""FastAPI endpoints exposing the Control Interface."""

import json
from typing import Dict, List, Any, NoReturn, Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.exceptions import (
    ExecutionNotFoundError,
    LeaseHeldError,
    LeaseLostError,
    ValidationError,
    WorkflowEngineError,
    create_error_response
)
from ..core.runtime import WorkflowRuntime
from ..core.websocket_manager import WebSocketManager
from ..core.logging import get_logger
from ..models.core import (
    ControlCommand,
    ExecutionResult,
    ExecutionStateView,
    ExecutionStatusEnum,
    ExecutionSummary,
    JournalEvent,
    NodeExecutionState,
    ValidationResult,
    WorkflowDefinition,
    utc_now,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["executions"])

# Global instances (initialized by the application factory)
_runtime: Optional[WorkflowRuntime] = None
_websocket_manager: Optional[WebSocketManager] = None


def init_dependencies(runtime: WorkflowRuntime, websocket_manager: Optional[WebSocketManager] = None):
    """Initialize the global dependencies."""
    global _runtime, _websocket_manager
    _runtime = runtime
    _websocket_manager = websocket_manager


def get_runtime() -> WorkflowRuntime:
    """Dependency to get the workflow runtime."""
    if _runtime is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow runtime not initialized"
        )
    return _runtime


def get_websocket_manager() -> Optional[WebSocketManager]:
    return _websocket_manager


# Request/Response models
class StartExecutionRequest(BaseModel):
    """Request model for starting an execution."""
    definition: WorkflowDefinition = Field(..., description="Workflow to execute")
    input: Any = Field(None, description="Execution input handed to trigger nodes")
    organization_id: Optional[str] = Field(None, description="Owning organization")
    trigger_type: Optional[str] = Field("manual", description="What started the execution")


class StartExecutionResponse(BaseModel):
    execution_id: str = Field(..., description="Identifier of the new execution")
    status: ExecutionStatusEnum = Field(..., description="Status right after start")
    validation_warnings: List[str] = Field(default_factory=list)


class SignalRequest(BaseModel):
    command: ControlCommand = Field(..., description="pause, resume or cancel")


class SignalResponse(BaseModel):
    execution_id: str
    command: ControlCommand
    accepted: bool = True


class ActivityInfo(BaseModel):
    name: str
    description: str = ""


def _raise_http_error(error: Exception, action: str) -> NoReturn:
    """Translate engine errors into HTTP responses."""
    if isinstance(error, WorkflowEngineError):
        if isinstance(error, ValidationError):
            status_code = status.HTTP_400_BAD_REQUEST
        elif isinstance(error, ExecutionNotFoundError):
            status_code = status.HTTP_404_NOT_FOUND
        elif isinstance(error, (LeaseHeldError, LeaseLostError)):
            status_code = status.HTTP_409_CONFLICT
        else:
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.warning(f"Workflow engine error while {action}: {error.message}")
        raise HTTPException(status_code=status_code, detail=create_error_response(error))

    logger.error(f"Unexpected error while {action}: {str(error)}", exc_info=True)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(error)},
            "timestamp": utc_now().isoformat()
        }
    )


# Endpoints

@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow definition"
)
async def validate_workflow(
    definition: WorkflowDefinition,
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> ValidationResult:
    return runtime.validate(definition)


@router.post(
    "/executions",
    response_model=StartExecutionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start an execution",
    description="Validate the workflow and start a durable execution of it"
)
def start_execution(
    request: StartExecutionRequest,
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> StartExecutionResponse:
    """
    Start a new execution.

    Returns 400 with every validation error when the graph is rejected;
    nothing is journaled in that case.
    """
    try:
        validation = runtime.validate(request.definition)
        execution_id = runtime.start(
            request.definition,
            request.input,
            organization_id=request.organization_id,
            trigger_type=request.trigger_type,
        )
        return StartExecutionResponse(
            execution_id=execution_id,
            status=runtime.get_state(execution_id).status,
            validation_warnings=validation.warnings
        )
    except Exception as e:
        _raise_http_error(e, "starting execution")


@router.get(
    "/executions",
    response_model=List[ExecutionSummary],
    summary="List executions"
)
def list_executions(
    status_filter: Optional[ExecutionStatusEnum] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> List[ExecutionSummary]:
    try:
        return runtime.list_executions(status=status_filter, limit=limit, offset=offset)
    except Exception as e:
        _raise_http_error(e, "listing executions")


@router.post(
    "/executions/{execution_id}/signal",
    response_model=SignalResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Pause, resume or cancel an execution"
)
def signal_execution(
    execution_id: str,
    request: SignalRequest,
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> SignalResponse:
    try:
        runtime.signal(execution_id, request.command)
        return SignalResponse(execution_id=execution_id, command=request.command)
    except Exception as e:
        _raise_http_error(e, f"signalling {request.command.value}")


@router.get(
    "/executions/{execution_id}",
    response_model=ExecutionStateView,
    summary="Current state of an execution (getState)"
)
def get_execution_state(
    execution_id: str,
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> ExecutionStateView:
    try:
        return runtime.get_state(execution_id)
    except Exception as e:
        _raise_http_error(e, "querying execution state")


@router.get(
    "/executions/{execution_id}/nodes/{node_id}",
    response_model=NodeExecutionState,
    summary="State of a single node (getNodeResult)"
)
def get_node_result(
    execution_id: str,
    node_id: str,
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> NodeExecutionState:
    try:
        node_state = runtime.get_node_result(execution_id, node_id)
    except Exception as e:
        _raise_http_error(e, "querying node result")
    if node_state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "NodeNotFound", "message": f"Node {node_id} is not part of execution {execution_id}"}
        )
    return node_state


@router.get(
    "/executions/{execution_id}/result",
    response_model=ExecutionResult,
    summary="Final result of an execution",
    description="Returns 202 with the current status if the execution has not finished within `wait` seconds"
)
def get_execution_result(
    execution_id: str,
    wait: float = Query(0, ge=0, le=300, description="Seconds to wait for completion"),
    runtime: WorkflowRuntime = Depends(get_runtime)
):
    try:
        return runtime.await_result(execution_id, timeout=wait)
    except TimeoutError:
        state = runtime.get_state(execution_id)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"execution_id": execution_id, "status": state.status.value}
        )
    except Exception as e:
        _raise_http_error(e, "awaiting execution result")


@router.get(
    "/executions/{execution_id}/journal",
    response_model=List[JournalEvent],
    summary="Journal events of an execution"
)
def get_execution_journal(
    execution_id: str,
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> List[JournalEvent]:
    try:
        return runtime.get_journal(execution_id)
    except Exception as e:
        _raise_http_error(e, "reading the journal")


@router.get(
    "/activities",
    response_model=List[ActivityInfo],
    summary="Registered activity types"
)
async def list_activities(runtime: WorkflowRuntime = Depends(get_runtime)) -> List[ActivityInfo]:
    return [
        ActivityInfo(name=name, description=description)
        for name, description in runtime.registry.list().items()
    ]


@router.post(
    "/maintenance/purge",
    summary="Delete finished executions past the retention window"
)
def purge_expired_executions(
    retention_days: Optional[int] = Query(None, ge=0),
    runtime: WorkflowRuntime = Depends(get_runtime)
) -> Dict[str, Any]:
    try:
        purged = runtime.purge_expired(retention_days)
        return {"purged": purged}
    except Exception as e:
        _raise_http_error(e, "purging executions")


@router.websocket("/ws/monitor")
async def websocket_monitor(websocket: WebSocket):
    """
    WebSocket endpoint for live execution progress.

    Client messages:
    {
        "action": "subscribe" | "unsubscribe" | "ping" | "get_status",
        "execution_id": "execution to follow"
    }

    Server messages carry ``event_type`` ("connection_established",
    "subscription_confirmed", "journal_event", "pong", "error"), the
    ``execution_id`` and, for journal events, the event and a status digest.
    """
    if not _websocket_manager:
        await websocket.close(code=1011, reason="WebSocket monitoring not available")
        return

    connection_id = None
    try:
        connection_id = await _websocket_manager.connect(websocket)
        if connection_id is None:
            return

        while True:
            try:
                message = json.loads(await websocket.receive_text())
                action = message.get("action")
                execution_id = message.get("execution_id")

                if action == "subscribe" and execution_id:
                    if not await _websocket_manager.subscribe(connection_id, execution_id):
                        await _websocket_manager.send_to_connection(connection_id, {
                            "event_type": "error",
                            "message": f"Failed to subscribe to execution {execution_id}",
                            "timestamp": utc_now().isoformat()
                        })

                elif action == "unsubscribe" and execution_id:
                    if await _websocket_manager.unsubscribe(connection_id, execution_id):
                        await _websocket_manager.send_to_connection(connection_id, {
                            "event_type": "unsubscribed",
                            "execution_id": execution_id,
                            "timestamp": utc_now().isoformat()
                        })

                elif action == "ping":
                    await _websocket_manager.send_to_connection(connection_id, {
                        "event_type": "pong",
                        "timestamp": utc_now().isoformat()
                    })

                elif action == "get_status":
                    await _websocket_manager.send_to_connection(connection_id, {
                        "event_type": "status_info",
                        "data": _websocket_manager.get_connection_info(),
                        "timestamp": utc_now().isoformat()
                    })

                else:
                    await _websocket_manager.send_to_connection(connection_id, {
                        "event_type": "error",
                        "message": f"Unknown action: {action}",
                        "timestamp": utc_now().isoformat()
                    })

            except json.JSONDecodeError:
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "error",
                    "message": "Invalid JSON message format",
                    "timestamp": utc_now().isoformat()
                })

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {str(e)}")
    finally:
        if connection_id:
            await _websocket_manager.disconnect(connection_id)


@router.get("/ws/connections", summary="Active WebSocket connections")
async def get_websocket_connections() -> Dict[str, Any]:
    if not _websocket_manager:
        return {"websocket_monitoring": "unavailable", "total_connections": 0}
    info = _websocket_manager.get_connection_info()
    return {"websocket_monitoring": "active", **info}
