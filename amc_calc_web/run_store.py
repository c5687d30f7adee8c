"""Persistence layer for saved batch runs.

A saved run keeps the batch totals in columns and one row per product record,
so a run can be listed without loading its records and the failed records of
a run can be fetched on their own. Runs belong to a session token and only
the newest ``max_per_user`` runs of a token are kept.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text, create_engine, delete, select
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ScheduleRunModel(Base):
    __tablename__ = "schedule_runs"

    # Insert order; newest run has the highest seq.
    seq = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(32), unique=True, nullable=False)
    user_token = Column(String(64), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    kind = Column(String(16), nullable=False)
    processed = Column(Integer, nullable=False, default=0)
    successful = Column(Integer, nullable=False, default=0)
    errors = Column(Integer, nullable=False, default=0)
    total_amount_with_tax = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    records = relationship(
        "RunRecordModel",
        back_populates="run",
        order_by="RunRecordModel.position",
        cascade="all, delete-orphan",
    )


class RunRecordModel(Base):
    __tablename__ = "schedule_run_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_seq = Column(Integer, ForeignKey("schedule_runs.seq"), index=True, nullable=False)
    position = Column(Integer, nullable=False)
    record_id = Column(String(64), nullable=False)
    product_name = Column(String(255), nullable=False)
    error = Column(Text)
    error_field = Column(String(64))
    total_amount_with_tax = Column(Float)
    result_json = Column(Text, nullable=False)

    run = relationship(ScheduleRunModel, back_populates="records")


def _record_total(result: Mapping[str, Any]) -> Optional[float]:
    summary = result.get("summary")
    if result.get("error") is not None or not isinstance(summary, Mapping):
        return None
    return summary.get("total_amount_with_tax")


class ScheduleRunStore:
    """Database-backed store of batch runs."""

    def __init__(self, url: str, *, max_per_user: int = 10) -> None:
        self._engine = create_engine(url, future=True)
        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        self._max_per_user = max_per_user

    def list_runs(self, user_token: str) -> List[Dict[str, Any]]:
        """Saved runs of a user, oldest first, without their records."""
        if not user_token:
            return []
        with self._session_factory() as session:
            runs = session.execute(
                select(ScheduleRunModel)
                .where(ScheduleRunModel.user_token == user_token)
                .order_by(ScheduleRunModel.seq)
            ).scalars()
            return [self._run_dict(run) for run in runs]

    def get_run(self, user_token: str, run_id: str, *, errors_only: bool = False) -> Optional[Dict[str, Any]]:
        """One saved run with its per-record results in input order.

        With ``errors_only`` only the records that failed are returned.
        """
        run = self._find(user_token, run_id)
        if run is None:
            return None
        with self._session_factory() as session:
            query = select(RunRecordModel).where(RunRecordModel.run_seq == run.seq)
            if errors_only:
                query = query.where(RunRecordModel.error.is_not(None))
            rows = session.execute(query.order_by(RunRecordModel.position)).scalars().all()
            failed_ids = session.execute(
                select(RunRecordModel.record_id)
                .where(RunRecordModel.run_seq == run.seq, RunRecordModel.error.is_not(None))
                .order_by(RunRecordModel.position)
            ).scalars().all()
        data = self._run_dict(run)
        data["summary"]["error_records"] = list(failed_ids)
        data["results"] = [json.loads(row.result_json) for row in rows]
        return data

    def add_run(
        self,
        user_token: str,
        run_id: str,
        name: str,
        kind: str,
        summary: Mapping[str, Any],
        results: List[Mapping[str, Any]],
    ) -> None:
        """Save a batch run given its serialized summary and per-record results."""
        if not user_token:
            return
        run = ScheduleRunModel(
            run_id=run_id,
            user_token=user_token,
            name=name,
            kind=kind,
            processed=int(summary.get("processed", len(results))),
            successful=int(summary.get("successful", 0)),
            errors=int(summary.get("errors", 0)),
            total_amount_with_tax=float(summary.get("total_amount_with_tax", 0.0)),
        )
        run.records = [
            RunRecordModel(
                position=position,
                record_id=str(result.get("record_id", position)),
                product_name=str(result.get("product_name", "")),
                error=result.get("error"),
                error_field=result.get("field"),
                total_amount_with_tax=_record_total(result),
                result_json=json.dumps(result),
            )
            for position, result in enumerate(results)
        ]
        with self._session_factory() as session:
            session.add(run)
            session.commit()
        self._trim_user(user_token)

    def remove_run(self, user_token: str, run_id: str) -> bool:
        run = self._find(user_token, run_id)
        if run is None:
            return False
        return self._delete_runs([run.seq]) == 1

    def clear_runs(self, user_token: str) -> int:
        """Delete every run of a user; returns how many were removed."""
        if not user_token:
            return 0
        with self._session_factory() as session:
            seqs = session.execute(
                select(ScheduleRunModel.seq).where(ScheduleRunModel.user_token == user_token)
            ).scalars().all()
        return self._delete_runs(seqs)

    def _find(self, user_token: str, run_id: str) -> Optional[ScheduleRunModel]:
        if not user_token:
            return None
        with self._session_factory() as session:
            return session.execute(
                select(ScheduleRunModel).where(
                    ScheduleRunModel.run_id == run_id, ScheduleRunModel.user_token == user_token
                )
            ).scalar_one_or_none()

    def _delete_runs(self, seqs: List[int]) -> int:
        if not seqs:
            return 0
        with self._session_factory() as session:
            session.execute(delete(RunRecordModel).where(RunRecordModel.run_seq.in_(seqs)))
            removed = session.execute(delete(ScheduleRunModel).where(ScheduleRunModel.seq.in_(seqs))).rowcount
            session.commit()
        return removed

    def _trim_user(self, user_token: str) -> None:
        if self._max_per_user < 1:
            return
        with self._session_factory() as session:
            stale = session.execute(
                select(ScheduleRunModel.seq)
                .where(ScheduleRunModel.user_token == user_token)
                .order_by(ScheduleRunModel.seq.desc())
                .offset(self._max_per_user)
            ).scalars().all()
        self._delete_runs(stale)

    @staticmethod
    def _run_dict(run: ScheduleRunModel) -> Dict[str, Any]:
        return {
            "id": run.run_id,
            "name": run.name,
            "kind": run.kind,
            "record_count": run.processed,
            "created_at": run.created_at.isoformat(),
            "summary": {
                "processed": run.processed,
                "successful": run.successful,
                "errors": run.errors,
                "total_amount_with_tax": run.total_amount_with_tax,
            },
        }


def create_store_from_env(url: Optional[str], max_per_user: Optional[str] = None) -> ScheduleRunStore:
    """Open the store at ``url`` (local SQLite by default)."""
    limit = int(max_per_user) if max_per_user else 10
    return ScheduleRunStore(url or "sqlite:///schedule_runs.sqlite3", max_per_user=limit)
