"""Durable, append-only execution journal with leases and fencing tokens."""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .exceptions import (
    ExecutionNotFoundError, JournalError, LeaseHeldError, LeaseLostError, StorageError
)
from .logging import get_logger
from .retry_policy import with_retry
from ..models.core import (
    ExecutionStatusEnum,
    ExecutionSummary,
    JournalEvent,
    JournalEventKind,
    Lease,
    utc_now,
)
from ..storage.models import ExecutionModel, JournalEventModel


logger = get_logger(__name__)


TERMINAL_STATUSES = [
    ExecutionStatusEnum.SUCCEEDED.value,
    ExecutionStatusEnum.FAILED.value,
    ExecutionStatusEnum.CANCELLED.value,
]

# Status snapshot kept on the executions row after each append
_STATUS_BY_KIND = {
    JournalEventKind.EXECUTION_STARTED: ExecutionStatusEnum.RUNNING,
    JournalEventKind.EXECUTION_PAUSED: ExecutionStatusEnum.PAUSED,
    JournalEventKind.EXECUTION_RESUMED: ExecutionStatusEnum.RUNNING,
    JournalEventKind.EXECUTION_CANCELLED: ExecutionStatusEnum.CANCELLED,
    JournalEventKind.EXECUTION_COMPLETED: ExecutionStatusEnum.SUCCEEDED,
    JournalEventKind.EXECUTION_FAILED: ExecutionStatusEnum.FAILED,
}


def normalize_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Reduce a payload to what survives a JSON column round trip."""
    return json.loads(json.dumps(payload or {}, default=str))


class ExecutionJournal:
    """
    SQLAlchemy-backed journal.

    Every append runs in one transaction that bumps ``last_sequence`` on the
    execution row only while the caller's fencing token is still current, so
    a process that lost its lease can never write again.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_execution(
        self,
        execution_id: str,
        workflow_id: str,
        owner_id: str,
        lease_seconds: float,
        organization_id: Optional[str] = None,
        trigger_type: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Lease:
        """Insert a new execution row with its lease held by ``owner_id``."""
        now = now or utc_now()
        expires_at = now + timedelta(seconds=lease_seconds)
        session = self._session_factory()
        try:
            session.add(ExecutionModel(
                id=execution_id,
                workflow_id=workflow_id,
                organization_id=organization_id,
                trigger_type=trigger_type,
                status=ExecutionStatusEnum.INITIALIZED.value,
                lease_owner=owner_id,
                lease_token=1,
                lease_expires_at=expires_at,
                last_sequence=0,
                created_at=now,
                updated_at=now,
            ))
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise JournalError(
                f"Execution {execution_id} already exists", execution_id=execution_id
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(
                f"Failed to create execution {execution_id}: {str(e)}",
                operation="create_execution", table="executions"
            ) from e
        finally:
            session.close()

        logger.debug(f"Created execution {execution_id} owned by {owner_id}")
        return Lease(execution_id=execution_id, owner_id=owner_id, token=1, expires_at=expires_at)

    def append(
        self,
        lease: Lease,
        kind: JournalEventKind,
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> JournalEvent:
        """
        Append one event under the caller's lease.

        Args:
            lease: Lease whose fencing token must still be current
            kind: Event kind
            payload: JSON-serializable event payload
            timestamp: Event time; defaults to now

        Returns:
            The stored event, with its assigned sequence number

        Raises:
            LeaseLostError: If another owner has taken over the execution
            JournalError: If the sequence could not be assigned
            StorageError: On database failures
        """
        payload = normalize_payload(payload)
        timestamp = timestamp or utc_now()
        session = self._session_factory()
        try:
            fenced = session.query(ExecutionModel).filter(
                ExecutionModel.id == lease.execution_id,
                ExecutionModel.lease_token == lease.token,
                ExecutionModel.lease_owner == lease.owner_id,
            ).update(
                {ExecutionModel.last_sequence: ExecutionModel.last_sequence + 1},
                synchronize_session=False
            )
            if fenced == 0:
                session.rollback()
                raise LeaseLostError(
                    f"Lease on execution {lease.execution_id} is no longer held by {lease.owner_id}",
                    execution_id=lease.execution_id,
                    token=lease.token
                )

            execution = session.query(ExecutionModel).filter(
                ExecutionModel.id == lease.execution_id
            ).one()
            sequence = execution.last_sequence

            status = _STATUS_BY_KIND.get(kind)
            if status is not None:
                execution.status = status.value
                if status.is_terminal:
                    execution.completed_at = timestamp
                    execution.error_message = payload.get("error") or payload.get("reason")
            execution.updated_at = timestamp

            session.add(JournalEventModel(
                execution_id=lease.execution_id,
                sequence=sequence,
                timestamp=timestamp,
                kind=kind.value,
                payload=payload,
                lease_token=lease.token,
            ))
            session.commit()
        except LeaseLostError:
            raise
        except IntegrityError as e:
            session.rollback()
            raise JournalError(
                f"Concurrent append detected on execution {lease.execution_id}",
                execution_id=lease.execution_id
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(
                f"Failed to append {kind.value} to {lease.execution_id}: {str(e)}",
                operation="append", table="journal_events"
            ) from e
        finally:
            session.close()

        return JournalEvent(
            sequence=sequence,
            execution_id=lease.execution_id,
            timestamp=timestamp,
            kind=kind,
            payload=payload,
        )

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    def acquire_lease(
        self,
        execution_id: str,
        owner_id: str,
        lease_seconds: float,
        now: Optional[datetime] = None
    ) -> Lease:
        """
        Take ownership of an execution.

        Succeeds when the lease is free, expired or already held by
        ``owner_id``. Every grant increments the fencing token.
        """
        now = now or utc_now()
        expires_at = now + timedelta(seconds=lease_seconds)
        session = self._session_factory()
        try:
            execution = session.query(ExecutionModel).filter(ExecutionModel.id == execution_id).first()
            if execution is None:
                raise ExecutionNotFoundError(execution_id)

            held_by_other = (
                execution.lease_owner is not None
                and execution.lease_owner != owner_id
                and execution.lease_expires_at is not None
                and execution.lease_expires_at > now
            )
            if held_by_other:
                raise LeaseHeldError(
                    f"Execution {execution_id} is leased by {execution.lease_owner} "
                    f"until {execution.lease_expires_at.isoformat()}",
                    execution_id=execution_id,
                    owner_id=execution.lease_owner
                )

            current_token = execution.lease_token
            new_token = current_token + 1
            granted = session.query(ExecutionModel).filter(
                ExecutionModel.id == execution_id,
                ExecutionModel.lease_token == current_token,
            ).update({
                ExecutionModel.lease_owner: owner_id,
                ExecutionModel.lease_token: new_token,
                ExecutionModel.lease_expires_at: expires_at,
            }, synchronize_session=False)
            if granted == 0:
                session.rollback()
                raise LeaseHeldError(
                    f"Lost the race for execution {execution_id}",
                    execution_id=execution_id
                )
            session.commit()
        except (ExecutionNotFoundError, LeaseHeldError):
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(
                f"Failed to acquire lease on {execution_id}: {str(e)}",
                operation="acquire_lease", table="executions"
            ) from e
        finally:
            session.close()

        logger.info(f"Lease on execution {execution_id} granted to {owner_id} (token {new_token})")
        return Lease(execution_id=execution_id, owner_id=owner_id, token=new_token, expires_at=expires_at)

    def renew_lease(self, lease: Lease, lease_seconds: float, now: Optional[datetime] = None) -> Lease:
        """Extend a lease that is still current; raises LeaseLostError otherwise."""
        now = now or utc_now()
        expires_at = now + timedelta(seconds=lease_seconds)
        session = self._session_factory()
        try:
            renewed = session.query(ExecutionModel).filter(
                ExecutionModel.id == lease.execution_id,
                ExecutionModel.lease_token == lease.token,
                ExecutionModel.lease_owner == lease.owner_id,
            ).update({ExecutionModel.lease_expires_at: expires_at}, synchronize_session=False)
            if renewed == 0:
                session.rollback()
                raise LeaseLostError(
                    f"Cannot renew lease on {lease.execution_id}: token {lease.token} is stale",
                    execution_id=lease.execution_id,
                    token=lease.token
                )
            session.commit()
        except LeaseLostError:
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(
                f"Failed to renew lease on {lease.execution_id}: {str(e)}",
                operation="renew_lease", table="executions"
            ) from e
        finally:
            session.close()

        return lease.model_copy(update={"expires_at": expires_at})

    def release_lease(self, lease: Lease) -> bool:
        """Give up a lease. Returns False if it had already been taken over."""
        session = self._session_factory()
        try:
            released = session.query(ExecutionModel).filter(
                ExecutionModel.id == lease.execution_id,
                ExecutionModel.lease_token == lease.token,
                ExecutionModel.lease_owner == lease.owner_id,
            ).update({
                ExecutionModel.lease_owner: None,
                ExecutionModel.lease_expires_at: None,
            }, synchronize_session=False)
            session.commit()
            return released > 0
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(
                f"Failed to release lease on {lease.execution_id}: {str(e)}",
                operation="release_lease", table="executions"
            ) from e
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @with_retry()
    def read(self, execution_id: str, after_sequence: int = 0) -> List[JournalEvent]:
        """All events of an execution, ordered by sequence."""
        session = self._session_factory()
        try:
            exists = session.query(ExecutionModel.id).filter(ExecutionModel.id == execution_id).first()
            if exists is None:
                raise ExecutionNotFoundError(execution_id)

            rows = session.query(JournalEventModel).filter(
                JournalEventModel.execution_id == execution_id,
                JournalEventModel.sequence > after_sequence,
            ).order_by(JournalEventModel.sequence.asc()).all()

            return [
                JournalEvent(
                    sequence=row.sequence,
                    execution_id=row.execution_id,
                    timestamp=row.timestamp,
                    kind=JournalEventKind(row.kind),
                    payload=row.payload or {},
                )
                for row in rows
            ]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read journal of {execution_id}: {str(e)}",
                operation="read", table="journal_events"
            ) from e
        finally:
            session.close()

    @with_retry()
    def get_summary(self, execution_id: str) -> ExecutionSummary:
        session = self._session_factory()
        try:
            execution = session.query(ExecutionModel).filter(ExecutionModel.id == execution_id).first()
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            return _to_summary(execution)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to load execution {execution_id}: {str(e)}",
                operation="get_summary", table="executions"
            ) from e
        finally:
            session.close()

    def exists(self, execution_id: str) -> bool:
        session = self._session_factory()
        try:
            return session.query(ExecutionModel.id).filter(ExecutionModel.id == execution_id).first() is not None
        finally:
            session.close()

    @with_retry()
    def list_executions(
        self,
        status: Optional[ExecutionStatusEnum] = None,
        workflow_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[ExecutionSummary]:
        """Execution summaries, newest first."""
        session = self._session_factory()
        try:
            query = session.query(ExecutionModel)
            if status is not None:
                query = query.filter(ExecutionModel.status == ExecutionStatusEnum(status).value)
            if workflow_id is not None:
                query = query.filter(ExecutionModel.workflow_id == workflow_id)
            rows = query.order_by(ExecutionModel.created_at.desc()).offset(offset).limit(limit).all()
            return [_to_summary(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to list executions: {str(e)}",
                operation="list_executions", table="executions"
            ) from e
        finally:
            session.close()

    def list_recoverable(self, now: Optional[datetime] = None) -> List[ExecutionSummary]:
        """Non-terminal executions whose lease is free or expired."""
        now = now or utc_now()
        session = self._session_factory()
        try:
            rows = session.query(ExecutionModel).filter(
                ExecutionModel.status.notin_(TERMINAL_STATUSES),
                ExecutionModel.last_sequence > 0,
                or_(
                    ExecutionModel.lease_owner.is_(None),
                    ExecutionModel.lease_expires_at.is_(None),
                    ExecutionModel.lease_expires_at < now,
                )
            ).order_by(ExecutionModel.created_at.asc()).all()
            return [_to_summary(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to list recoverable executions: {str(e)}",
                operation="list_recoverable", table="executions"
            ) from e
        finally:
            session.close()

    def purge_expired(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete terminal executions (and their journals) older than the retention window."""
        now = now or utc_now()
        cutoff = now - timedelta(days=retention_days)
        session = self._session_factory()
        try:
            expired_ids = [
                row.id for row in session.query(ExecutionModel.id).filter(
                    ExecutionModel.status.in_(TERMINAL_STATUSES),
                    ExecutionModel.completed_at.isnot(None),
                    ExecutionModel.completed_at < cutoff,
                ).all()
            ]
            if not expired_ids:
                return 0

            session.query(JournalEventModel).filter(
                JournalEventModel.execution_id.in_(expired_ids)
            ).delete(synchronize_session=False)
            session.query(ExecutionModel).filter(
                ExecutionModel.id.in_(expired_ids)
            ).delete(synchronize_session=False)
            session.commit()

            logger.info(f"Purged {len(expired_ids)} executions completed before {cutoff.isoformat()}")
            return len(expired_ids)
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(
                f"Failed to purge expired executions: {str(e)}",
                operation="purge_expired", table="executions"
            ) from e
        finally:
            session.close()


def _to_summary(execution: ExecutionModel) -> ExecutionSummary:
    return ExecutionSummary(
        execution_id=execution.id,
        workflow_id=execution.workflow_id,
        status=ExecutionStatusEnum(execution.status),
        organization_id=execution.organization_id,
        trigger_type=execution.trigger_type,
        error_message=execution.error_message,
        lease_owner=execution.lease_owner,
        lease_expires_at=execution.lease_expires_at,
        last_sequence=execution.last_sequence,
        created_at=execution.created_at,
        completed_at=execution.completed_at,
    )
