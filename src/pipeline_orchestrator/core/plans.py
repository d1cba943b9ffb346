"""Stored plans and their conversion into requirements."""

import json
import logging
import sqlite3

from pipeline_orchestrator.core.errors import InvalidTransitionError, NotFoundError
from pipeline_orchestrator.core.requirements import create_requirement
from pipeline_orchestrator.db.engine import new_id, now_iso, parse_dt, transaction
from pipeline_orchestrator.db.models import PLAN_STATUSES, Plan, StructuredSpec

logger = logging.getLogger(__name__)

_JSON_FIELDS = (
    "questions",
    "requirements",
    "architectural_decisions",
    "implementation_order",
    "assumptions",
    "out_of_scope",
    "risks",
)

# camelCase keys accepted from imported plan documents
_IMPORT_KEYS = {
    "highLevelGoal": "high_level_goal",
    "architecturalDecisions": "architectural_decisions",
    "implementationOrder": "implementation_order",
    "outOfScope": "out_of_scope",
}

_COMPLEXITY_PRIORITY = {"high": "high", "medium": "medium"}


def create_plan(
    db: sqlite3.Connection,
    session_id: str,
    high_level_goal: str,
    **fields,
) -> Plan:
    """Store a new plan. Extra keyword fields map onto Plan attributes."""
    plan_id = new_id()
    now = now_iso()
    with transaction(db):
        db.execute(
            """INSERT INTO plans (id, session_id, high_level_goal, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)""",
            (plan_id, session_id, high_level_goal, now, now),
        )
        if fields:
            update_plan(db, plan_id, **fields)
    return get_plan(db, plan_id)


def plan_from_document(db: sqlite3.Connection, session_id: str, document: dict) -> Plan:
    """Create a plan from a JSON document such as a planning assistant's output."""
    data = {_IMPORT_KEYS.get(k, k): v for k, v in document.items()}
    goal = data.pop("high_level_goal", None) or data.get("overview") or "Imported plan"
    if not data.get("implementation_order"):
        data["implementation_order"] = [r["id"] for r in data.get("requirements", []) if "id" in r]
    data.pop("id", None)
    data.pop("session_id", None)
    allowed = set(_JSON_FIELDS) | {"status", "overview"}
    fields = {k: v for k, v in data.items() if k in allowed}
    return create_plan(db, session_id, goal, **fields)


def get_plan(db: sqlite3.Connection, plan_id: str) -> Plan | None:
    row = db.execute("SELECT * FROM plans WHERE id = ?", (plan_id,)).fetchone()
    if not row:
        return None
    return _row_to_plan(row)


def list_plans(db: sqlite3.Connection, session_id: str) -> list[Plan]:
    rows = db.execute(
        "SELECT * FROM plans WHERE session_id = ? ORDER BY created_at DESC, rowid DESC",
        (session_id,),
    ).fetchall()
    return [_row_to_plan(r) for r in rows]


def get_active_plan(db: sqlite3.Connection, session_id: str) -> Plan | None:
    """Newest plan that is neither completed nor rejected."""
    row = db.execute(
        """SELECT * FROM plans WHERE session_id = ? AND status NOT IN ('completed', 'rejected')
           ORDER BY created_at DESC, rowid DESC LIMIT 1""",
        (session_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_plan(row)


def update_plan(db: sqlite3.Connection, plan_id: str, **fields) -> Plan:
    updates: dict = {}
    for key, value in fields.items():
        if key in _JSON_FIELDS:
            updates[key] = json.dumps(value)
        elif key == "overview":
            updates[key] = value
        elif key == "status":
            if value not in PLAN_STATUSES:
                raise ValueError(f"Unknown plan status: {value}")
            updates["status"] = value
            if value == "approved":
                updates["approved_at"] = now_iso()
        else:
            raise ValueError(f"Unknown plan field: {key}")

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = ?")
    values = list(updates.values()) + [now_iso(), plan_id]
    with transaction(db):
        cur = db.execute(f"UPDATE plans SET {', '.join(set_parts)} WHERE id = ?", values)
        if cur.rowcount == 0:
            raise NotFoundError("Plan", plan_id)
    return get_plan(db, plan_id)


def materialize_plan(db: sqlite3.Connection, plan_id: str) -> list[str]:
    """Turn an approved plan into requirements, in implementation order.

    Planned dependency ids are rewritten to the new requirement ids; the
    structured spec is filled in from the plan. Returns the created ids.
    """
    plan = get_plan(db, plan_id)
    if not plan:
        raise NotFoundError("Plan", plan_id)
    if plan.status != "approved":
        raise InvalidTransitionError(plan_id, plan.status, "executing")

    planned = {r["id"]: r for r in plan.requirements if "id" in r}
    planned_to_actual: dict[str, str] = {}
    created: list[str] = []

    with transaction(db):
        update_plan(db, plan_id, status="executing")
        for planned_id in plan.implementation_order:
            item = planned.get(planned_id)
            if item is None:
                logger.warning("Plan %s orders unknown requirement %s", plan_id, planned_id)
                continue

            spec = StructuredSpec.from_dict(item)
            spec.priority = _COMPLEXITY_PRIORITY.get(item.get("estimatedComplexity"), "low")
            depends_on = [
                planned_to_actual[d] for d in item.get("dependencies", []) if d in planned_to_actual
            ]
            requirement = create_requirement(
                db,
                plan.session_id,
                f"{spec.title}: {spec.description}",
                priority=int(item.get("priority") or 0),
                depends_on=depends_on,
                structured_spec=spec,
            )
            planned_to_actual[planned_id] = requirement.id
            created.append(requirement.id)

    logger.info("Materialized plan %s into %d requirements", plan_id, len(created))
    return created


def _row_to_plan(row: sqlite3.Row) -> Plan:
    def _json(key: str):
        return json.loads(row[key]) if row[key] else []

    return Plan(
        id=row["id"],
        session_id=row["session_id"],
        high_level_goal=row["high_level_goal"],
        status=row["status"],
        questions=_json("questions"),
        requirements=_json("requirements"),
        architectural_decisions=_json("architectural_decisions"),
        implementation_order=_json("implementation_order"),
        overview=row["overview"],
        assumptions=_json("assumptions"),
        out_of_scope=_json("out_of_scope"),
        risks=_json("risks"),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
        approved_at=parse_dt(row["approved_at"]),
    )
