"""Persistent escalation, observation and review-cycle repository."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from overseer.errors import NotFoundError, PersistenceError
from overseer.oversight.models import (
    AnsweredBy,
    EscalationAnswer,
    EscalationCreate,
    EscalationQuestion,
    EscalationStatus,
    EscalationTrigger,
    EscalationView,
    ObservationKind,
    ObservationSignal,
    ObservationView,
    QuestionOption,
    ReviewCycleView,
    Severity,
    TriggerType,
)
from overseer.storage.alembic_runner import upgrade_head
from overseer.storage.codec import (
    dump_record_list,
    dump_str_list,
    load_record_list,
    load_str_list,
)
from overseer.storage.common import (
    build_sqlite_engine,
    optional_utc,
    persistence_errors,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from overseer.storage.sqlmodel_models import (
    Escalation,
    EscalationTaskBlock,
    Observation,
    Outcome,
    ReviewCycle,
    Task,
)

logger = logging.getLogger(__name__)

_REVIEW_CYCLE_INSERT_RETRIES = 5


class OversightRepository:
    """Escalation and observation persistence backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- escalations ----------------------------------------------------------

    def insert_escalation(
        self,
        payload: EscalationCreate,
        *,
        severity: Severity,
    ) -> EscalationView:
        """Persist a pending escalation together with its task blocks."""

        escalation_id = payload.escalation_id or str(uuid4())
        created_at = to_db_datetime(payload.created_at or utc_now())
        affected = list(dict.fromkeys(payload.affected_task_ids))

        with persistence_errors("insert_escalation"), Session(self.engine) as session:
            _require_row(session, Outcome.outcome_id, payload.outcome_id, "Outcome")
            if payload.trigger.task_id is not None:
                _require_row(session, Task.task_id, payload.trigger.task_id, "Task")
            for task_id in affected:
                _require_row(session, Task.task_id, task_id, "Task")

            session.add(
                Escalation(
                    escalation_id=escalation_id,
                    outcome_id=payload.outcome_id,
                    status=EscalationStatus.PENDING.value,
                    severity=severity.value,
                    trigger_type=payload.trigger.type.value,
                    trigger_task_id=payload.trigger.task_id,
                    trigger_evidence_json=dump_str_list(payload.trigger.evidence),
                    question_text=payload.question.text,
                    question_context=payload.question.context,
                    question_options_json=_encode_options(payload.question.options),
                    created_at=created_at,
                ),
            )
            session.flush()
            for task_id in affected:
                session.add(EscalationTaskBlock(escalation_id=escalation_id, task_id=task_id))
            session.commit()
        return self.get_escalation(escalation_id)

    def get_escalation(self, escalation_id: str) -> EscalationView:
        with persistence_errors("get_escalation"), Session(self.engine) as session:
            row = session.exec(
                select(Escalation).where(col(Escalation.escalation_id) == escalation_id),
            ).one_or_none()
            if row is None:
                raise NotFoundError("Escalation", escalation_id)
            blocks = _load_blocks(session, [escalation_id])
            return _to_escalation_view(row, blocks.get(escalation_id, []))

    def list_escalations(
        self,
        *,
        outcome_id: str | None = None,
        status: EscalationStatus | None = None,
        since: datetime | None = None,
        include_incorporated: bool = True,
        held: bool | None = None,
    ) -> list[EscalationView]:
        """List escalations oldest first."""

        with persistence_errors("list_escalations"), Session(self.engine) as session:
            statement = select(Escalation).order_by(
                col(Escalation.created_at).asc(),
                col(Escalation.escalation_id).asc(),
            )
            if outcome_id is not None:
                statement = statement.where(col(Escalation.outcome_id) == outcome_id)
            if status is not None:
                statement = statement.where(col(Escalation.status) == status.value)
            if since is not None:
                statement = statement.where(col(Escalation.created_at) >= to_db_datetime(since))
            if not include_incorporated:
                statement = statement.where(col(Escalation.incorporated_into_outcome_id).is_(None))
            if held is not None:
                statement = statement.where(col(Escalation.hold_active).is_(held))
            rows = session.exec(statement).all()
            blocks = _load_blocks(session, [row.escalation_id for row in rows])
            return [_to_escalation_view(row, blocks.get(row.escalation_id, [])) for row in rows]

    def record_answer(
        self,
        escalation_id: str,
        answer: EscalationAnswer,
        *,
        hold_task_ids: Sequence[str] | None = None,
    ) -> bool:
        """Write all answer fields in one conditional update on a pending row.

        ``hold_task_ids`` keeps the answered escalation blocking those tasks
        until :meth:`release_hold`; ``None`` releases every block.
        """

        with persistence_errors("record_answer"), Session(self.engine) as session:
            result = session.exec(
                sa_update(Escalation)
                .where(
                    col(Escalation.escalation_id) == escalation_id,
                    col(Escalation.status) == EscalationStatus.PENDING.value,
                )
                .values(
                    status=EscalationStatus.ANSWERED.value,
                    answer_option=answer.option,
                    answer_context=answer.context,
                    answered_at=to_db_datetime(answer.answered_at),
                    answered_by=answer.answered_by.value,
                    answer_confidence=answer.confidence,
                    hold_active=hold_task_ids is not None,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            if hold_task_ids is not None:
                existing = set(_load_blocks(session, [escalation_id]).get(escalation_id, []))
                for task_id in dict.fromkeys(hold_task_ids):
                    if task_id not in existing:
                        session.add(
                            EscalationTaskBlock(escalation_id=escalation_id, task_id=task_id),
                        )
            session.commit()
            return True

    def release_hold(self, escalation_id: str) -> bool:
        """Stop an answered escalation from blocking its tasks."""

        with persistence_errors("release_hold"), Session(self.engine) as session:
            result = session.exec(
                sa_update(Escalation)
                .where(
                    col(Escalation.escalation_id) == escalation_id,
                    col(Escalation.hold_active).is_(True),
                )
                .values(hold_active=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_dismissal(self, escalation_id: str, *, reason: str, dismissed_at: datetime) -> bool:
        with persistence_errors("record_dismissal"), Session(self.engine) as session:
            result = session.exec(
                sa_update(Escalation)
                .where(
                    col(Escalation.escalation_id) == escalation_id,
                    col(Escalation.status) == EscalationStatus.PENDING.value,
                )
                .values(
                    status=EscalationStatus.DISMISSED.value,
                    dismiss_reason=reason,
                    dismissed_at=to_db_datetime(dismissed_at),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def count_pending(
        self,
        outcome_id: str,
        *,
        severities: Sequence[Severity] | None = None,
    ) -> int:
        with persistence_errors("count_pending"), Session(self.engine) as session:
            statement = select(func.count(col(Escalation.escalation_id))).where(
                col(Escalation.outcome_id) == outcome_id,
                col(Escalation.status) == EscalationStatus.PENDING.value,
            )
            if severities is not None:
                statement = statement.where(
                    col(Escalation.severity).in_([severity.value for severity in severities]),
                )
            return int(session.exec(statement).one())

    def answer_patterns(self, outcome_id: str | None = None) -> dict[str, dict[str, int]]:
        """Chosen option counts per trigger type, for reporting."""

        with persistence_errors("answer_patterns"), Session(self.engine) as session:
            statement = (
                select(
                    Escalation.trigger_type,
                    Escalation.answer_option,
                    func.count(col(Escalation.escalation_id)),
                )
                .where(col(Escalation.status) == EscalationStatus.ANSWERED.value)
                .group_by(col(Escalation.trigger_type), col(Escalation.answer_option))
            )
            if outcome_id is not None:
                statement = statement.where(col(Escalation.outcome_id) == outcome_id)
            rows = session.exec(statement).all()
        patterns: dict[str, dict[str, int]] = defaultdict(dict)
        for trigger_type, option, count in rows:
            patterns[trigger_type][option or ""] = int(count)
        return dict(patterns)

    # -- observations ---------------------------------------------------------

    def insert_observation(
        self,
        *,
        outcome_id: str,
        task_id: str | None,
        signal: ObservationSignal,
        escalation_id: str | None,
    ) -> ObservationView:
        observation_id = str(uuid4())
        with persistence_errors("insert_observation"), Session(self.engine) as session:
            row = Observation(
                observation_id=observation_id,
                outcome_id=outcome_id,
                task_id=task_id,
                kind=signal.kind.value,
                message=signal.message,
                evidence_json=dump_str_list(signal.evidence) if signal.evidence else None,
                escalation_id=escalation_id,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_observation_view(row)

    def list_observations(
        self,
        outcome_id: str,
        *,
        task_id: str | None = None,
    ) -> list[ObservationView]:
        with persistence_errors("list_observations"), Session(self.engine) as session:
            statement = (
                select(Observation)
                .where(col(Observation.outcome_id) == outcome_id)
                .order_by(col(Observation.created_at).asc())
            )
            if task_id is not None:
                statement = statement.where(col(Observation.task_id) == task_id)
            rows = session.exec(statement).all()
        return [_to_observation_view(row) for row in rows]

    # -- review cycles --------------------------------------------------------

    def insert_review_cycle(
        self,
        *,
        outcome_id: str,
        issues_found: int,
        tasks_created: int,
        converged: bool,
        unevaluated: Sequence[str] = (),
    ) -> ReviewCycleView:
        """Append the next review cycle; concurrent reviewers get distinct numbers."""

        for _ in range(_REVIEW_CYCLE_INSERT_RETRIES):
            with persistence_errors("insert_review_cycle"), Session(self.engine) as session:
                _require_row(session, Outcome.outcome_id, outcome_id, "Outcome")
                last = session.exec(
                    select(func.max(col(ReviewCycle.cycle_number))).where(
                        col(ReviewCycle.outcome_id) == outcome_id,
                    ),
                ).one()
                row = ReviewCycle(
                    review_id=str(uuid4()),
                    outcome_id=outcome_id,
                    cycle_number=int(last or 0) + 1,
                    issues_found=issues_found,
                    tasks_created=tasks_created,
                    converged=converged,
                    unevaluated_json=dump_str_list(unevaluated) if unevaluated else None,
                    created_at=to_db_datetime(utc_now()),
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.debug("Review cycle number collision for outcome %s", outcome_id)
                    continue
                session.refresh(row)
                return _to_review_cycle_view(row)
        raise PersistenceError(
            f"Could not allocate a review cycle number for outcome {outcome_id}.",
        )

    def list_review_cycles(self, outcome_id: str) -> list[ReviewCycleView]:
        with persistence_errors("list_review_cycles"), Session(self.engine) as session:
            rows = session.exec(
                select(ReviewCycle)
                .where(col(ReviewCycle.outcome_id) == outcome_id)
                .order_by(col(ReviewCycle.cycle_number).asc()),
            ).all()
        return [_to_review_cycle_view(row) for row in rows]


def _require_row(session: Session, key_column, value: str, kind: str) -> None:
    found = session.exec(select(key_column).where(col(key_column) == value)).one_or_none()
    if found is None:
        raise NotFoundError(kind, value)


def _load_blocks(session: Session, escalation_ids: list[str]) -> dict[str, list[str]]:
    if not escalation_ids:
        return {}
    rows = session.exec(
        select(EscalationTaskBlock).where(
            col(EscalationTaskBlock.escalation_id).in_(escalation_ids),
        ),
    ).all()
    blocks: dict[str, list[str]] = defaultdict(list)
    for row in rows:
        blocks[row.escalation_id].append(row.task_id)
    return {key: sorted(values) for key, values in blocks.items()}


def _encode_options(options: Sequence[QuestionOption]) -> str:
    return dump_record_list(
        [
            {
                "id": option.id,
                "label": option.label,
                "description": option.description,
                "implications": option.implications,
            }
            for option in options
        ],
    )


def _decode_options(raw: str | None) -> list[QuestionOption]:
    records = load_record_list(
        raw,
        field_name="escalations.question_options",
        required_keys=("id", "label"),
    )
    return [
        QuestionOption(
            id=str(record["id"]),
            label=str(record["label"]),
            description=str(record.get("description", "")),
            implications=str(record.get("implications", "")),
        )
        for record in records
    ]


def _to_escalation_view(row: Escalation, affected_task_ids: list[str]) -> EscalationView:
    answer = None
    if row.status == EscalationStatus.ANSWERED.value and row.answered_at is not None:
        answer = EscalationAnswer(
            option=row.answer_option or "",
            context=row.answer_context or "",
            answered_at=to_utc_aware_datetime(row.answered_at),
            answered_by=AnsweredBy(row.answered_by or AnsweredBy.HUMAN.value),
            confidence=row.answer_confidence,
        )
    return EscalationView(
        escalation_id=row.escalation_id,
        outcome_id=row.outcome_id,
        status=EscalationStatus(row.status),
        severity=Severity(row.severity),
        trigger=EscalationTrigger(
            type=TriggerType.decode(row.trigger_type),
            task_id=row.trigger_task_id,
            evidence=load_str_list(
                row.trigger_evidence_json,
                field_name="escalations.trigger_evidence",
            ),
        ),
        question=EscalationQuestion(
            text=row.question_text,
            context=row.question_context,
            options=_decode_options(row.question_options_json),
        ),
        answer=answer,
        dismiss_reason=row.dismiss_reason,
        dismissed_at=optional_utc(row.dismissed_at),
        affected_task_ids=affected_task_ids,
        incorporated_into=row.incorporated_into_outcome_id,
        created_at=to_utc_aware_datetime(row.created_at),
        hold_active=bool(row.hold_active),
    )


def _to_observation_view(row: Observation) -> ObservationView:
    return ObservationView(
        observation_id=row.observation_id,
        outcome_id=row.outcome_id,
        task_id=row.task_id,
        kind=ObservationKind(row.kind),
        message=row.message,
        evidence=load_str_list(row.evidence_json, field_name="observations.evidence"),
        escalation_id=row.escalation_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_review_cycle_view(row: ReviewCycle) -> ReviewCycleView:
    return ReviewCycleView(
        review_id=row.review_id,
        outcome_id=row.outcome_id,
        cycle_number=row.cycle_number,
        issues_found=row.issues_found,
        tasks_created=row.tasks_created,
        converged=bool(row.converged),
        unevaluated=load_str_list(row.unevaluated_json, field_name="review_cycles.unevaluated"),
        created_at=to_utc_aware_datetime(row.created_at),
    )
