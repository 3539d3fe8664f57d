# --------------------------- relay/services/materializer.py ----------------------------
"""
Relay · Entity Materializer

OVERVIEW:
Once a delivery is attached to a concrete engagement, the classification
usually implies more records: events it mentions, programs, participants and
typed links between them. This module writes those records as a saga of named
steps, each idempotent and each allowed to fail on its own.

WORKFLOW:
1. seed_map             - engagement names -> engagement ref
2. register_events      - known events into the map, unknown ones into
                          pending event approvals (never auto-created)
3. materialize_programs - find-by-name or create, then register
4. link_entities        - resolve both names through the map, dedupe, create
5. upsert_participants  - dedupe by email, fill empty fields, link

BUSINESS LOGIC:
- A failure is recorded on its step and the saga moves on; nothing is
  rolled back and nothing is raised to the caller
- Re-running the saga never duplicates programs, participants or links,
  so failed steps can simply be resumed
- The forwarding operator always gets the "forwarder" role

TECHNICAL ARCHITECTURE:
- MaterializationReport carries per-step status, counts and errors
- Each run is stored in materialization_runs on a best-effort basis
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from config import settings
from relay.models import ClassificationResult, EntityKind, EntityLink, EntityRef

logger = logging.getLogger(__name__)

FORWARDER_ROLE = "forwarder"


def normalize_entity_name(name: Optional[str]) -> str:
    return " ".join((name or "").lower().split())


# ╔══════════ 1. Report types ══════════════════════════════════════════════

class StepStatus(Enum):
    PENDING = "pending"
    OK = "ok"
    FAILED = "failed"


@dataclass
class StepOutcome:
    name: str
    status: StepStatus = StepStatus.PENDING
    created: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def fail(self, message: str):
        self.status = StepStatus.FAILED
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "created": self.created,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass
class MaterializationReport:
    engagement_id: str
    message_id: Optional[str] = None
    steps: Dict[str, StepOutcome] = field(default_factory=dict)

    @property
    def failed_steps(self) -> List[str]:
        return [name for name, step in self.steps.items() if step.status == StepStatus.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed_steps

    def to_record(self) -> Dict[str, Any]:
        return {
            "engagement_id": self.engagement_id,
            "message_id": self.message_id,
            "steps": [step.to_dict() for step in self.steps.values()],
        }


@dataclass
class _SagaState:
    engagement_id: str
    result: ClassificationResult
    message_id: Optional[str]
    entity_map: Dict[str, EntityRef] = field(default_factory=dict)

    def register(self, name: Optional[str], ref: EntityRef):
        key = normalize_entity_name(name)
        if key:
            self.entity_map[key] = ref

    def lookup(self, name: Optional[str]) -> Optional[EntityRef]:
        return self.entity_map.get(normalize_entity_name(name))


# ╔══════════ 2. Saga ══════════════════════════════════════════════════════

class EntityMaterializer:
    """Persists events, programs, links and participants implied by a classification."""

    STEPS = ("seed_map", "register_events", "materialize_programs", "link_entities", "upsert_participants")
    # Steps that rebuild the in-memory name map; they always run on resume.
    MAP_STEPS = ("seed_map", "register_events", "materialize_programs")

    def __init__(self, store):
        self.store = store

    def run(self, engagement_id: str, result: ClassificationResult,
            message_id: Optional[str] = None) -> MaterializationReport:
        """Run every step. Never raises."""
        return self._execute(engagement_id, result, message_id, self.STEPS)

    def resume(self, report: MaterializationReport, result: ClassificationResult) -> MaterializationReport:
        """Re-run the failed steps of an earlier report (map steps are always replayed)."""
        wanted = [name for name in self.STEPS if name in self.MAP_STEPS or name in report.failed_steps]
        return self._execute(report.engagement_id, result, report.message_id, wanted)

    def _execute(self, engagement_id: str, result: ClassificationResult,
                 message_id: Optional[str], step_names) -> MaterializationReport:
        state = _SagaState(engagement_id, result, message_id)
        report = MaterializationReport(engagement_id, message_id)
        handlers: Dict[str, Callable[[_SagaState, StepOutcome], None]] = {
            "seed_map": self._seed_map,
            "register_events": self._register_events,
            "materialize_programs": self._materialize_programs,
            "link_entities": self._link_entities,
            "upsert_participants": self._upsert_participants,
        }

        for name in step_names:
            outcome = StepOutcome(name)
            report.steps[name] = outcome
            try:
                handlers[name](state, outcome)
            except Exception as e:
                logger.error(f"Materialization step {name} failed for engagement {engagement_id}: {e}")
                outcome.fail(str(e))
            if outcome.status == StepStatus.PENDING:
                outcome.status = StepStatus.OK

        if report.failed_steps:
            logger.warning(f"Materialization for {engagement_id} finished with failed steps: {report.failed_steps}")
        self._record(report)
        return report

    def _record(self, report: MaterializationReport):
        try:
            self.store.record_materialization_run(report.to_record())
        except Exception as e:
            logger.warning(f"Could not record materialization run: {e}")

    # ─── Steps ──────────────────────────────────────────────────────────

    def _seed_map(self, state: _SagaState, outcome: StepOutcome):
        ref = EntityRef(EntityKind.ENGAGEMENT, state.engagement_id)
        state.register(state.result.engagement_match.name, ref)
        engagement = self.store.get_engagement(state.engagement_id)
        if engagement is None:
            outcome.fail(f"engagement {state.engagement_id} not found")
            return
        state.register(engagement.get("name"), ref)

    def _register_events(self, state: _SagaState, outcome: StepOutcome):
        for event in state.result.events_referenced:
            try:
                if event.id:
                    state.register(event.name, EntityRef(EntityKind.EVENT, event.id))
                    outcome.skipped += 1
                    continue

                existing = self.store.find_event_by_name(event.name)
                if existing:
                    state.register(event.name, EntityRef(EntityKind.EVENT, existing["id"]))
                    outcome.skipped += 1
                    continue

                if self.store.find_open_event_approval(state.engagement_id, event.name):
                    outcome.skipped += 1
                    continue

                self.store.create_event_approval({
                    "engagement_id": state.engagement_id,
                    "message_id": state.message_id,
                    "entity_data": {
                        "name": event.name,
                        "type": event.type,
                        "date": event.date,
                        "date_precision": event.date_precision,
                        "confidence": event.confidence,
                    },
                })
                outcome.created += 1
            except Exception as e:
                outcome.fail(f"event '{event.name}': {e}")

    def _materialize_programs(self, state: _SagaState, outcome: StepOutcome):
        for program in state.result.programs_referenced:
            try:
                if program.id:
                    state.register(program.name, EntityRef(EntityKind.PROGRAM, program.id))
                    outcome.skipped += 1
                    continue

                existing = self.store.find_program_by_name(program.name)
                if existing:
                    outcome.skipped += 1
                else:
                    existing = self.store.create_program({"name": program.name})
                    outcome.created += 1
                    logger.info(f"Created program '{program.name}'")
                state.register(program.name, EntityRef(EntityKind.PROGRAM, existing["id"]))
            except Exception as e:
                outcome.fail(f"program '{program.name}': {e}")

    def _link_entities(self, state: _SagaState, outcome: StepOutcome):
        for ref in state.result.entity_links:
            try:
                source = state.lookup(ref.source_name)
                target = state.lookup(ref.target_name)
                if source is None or target is None or source == target:
                    outcome.skipped += 1
                    continue

                link = EntityLink(source, target, ref.relationship, ref.context)
                if self.store.find_entity_link(link):
                    outcome.skipped += 1
                    continue

                self.store.create_entity_link(link)
                outcome.created += 1
            except Exception as e:
                outcome.fail(f"link '{ref.source_name}' -> '{ref.target_name}': {e}")

    def _upsert_participants(self, state: _SagaState, outcome: StepOutcome):
        operator = (settings.RELAY_EMAIL_ADDRESS or "").strip().lower()
        seen = set()

        for person in state.result.participants:
            email = (person.email or "").strip().lower()
            if not email or email in seen:
                outcome.skipped += 1
                continue
            seen.add(email)

            try:
                role = FORWARDER_ROLE if operator and email == operator else person.role
                title = role if role and role != FORWARDER_ROLE else None
                wanted = {"name": person.name, "organization": person.organization, "title": title}

                existing = self.store.find_participant_by_email(email)
                if existing:
                    participant_id = existing["id"]
                    updates = {k: v for k, v in wanted.items() if v and not existing.get(k)}
                    if updates:
                        self.store.update_participant(participant_id, updates)
                else:
                    created = self.store.create_participant({"email": email, **wanted})
                    participant_id = created["id"]
                    outcome.created += 1

                entity_type = EntityKind.ENGAGEMENT.value
                if not self.store.find_participant_link(participant_id, entity_type, state.engagement_id):
                    self.store.create_participant_link(participant_id, entity_type, state.engagement_id, role)
            except Exception as e:
                outcome.fail(f"participant {email}: {e}")
