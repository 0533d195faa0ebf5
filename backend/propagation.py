# propagation.py — Leaf entry upsert and ancestor recomputation
# A leaf write and every derived ancestor entry it changes are committed as a
# single unit. Condition entries are only ever written here.

import logging
from datetime import date
from typing import Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

import stores
from access import AccessScope
from coercion import BoolValue, format_bool, validate
from database import dialect_name, transaction
from evaluator import evaluate, evaluate_atom, evaluate_node
from exceptions import EvalError, InvalidOperationError
from logging_system import TimedOperation, log_propagation
from models import RequirementEntry
from revisions import resolve_snapshot
from tree import RevisionTree

logger = logging.getLogger("taskfuss.propagation")


def recompute_chain(
    tree: RevisionTree,
    start_id: int,
    values: Mapping[int, Optional[str]],
) -> List[Tuple[int, bool]]:
    """Recompute every ancestor of ``start_id`` from one day's entry values.

    ``values`` maps skeleton id to the stored entry value for that day and
    must already hold the new value of ``start_id``. Returns
    ``(skeleton_id, truth)`` pairs nearest ancestor first, root last.
    """
    current: Dict[int, Optional[str]] = dict(values)
    results: List[Tuple[int, bool]] = []
    for node in tree.ancestors(start_id):
        if node.type != "condition":
            raise EvalError(
                f"requirement {node.skeleton_id} has children but is not a condition",
                requirement_id=node.skeleton_id,
            )
        operands = [
            BoolValue(evaluate_node(child, current.get(child.skeleton_id)))
            for child in tree.children(node.skeleton_id)
        ]
        truth = evaluate(node.operator, operands)
        current[node.skeleton_id] = format_bool(truth)
        results.append((node.skeleton_id, truth))
    return results


async def lock_task(db: AsyncSession, task_id: int) -> None:
    """Serialize entry writes per task for the rest of the transaction (PostgreSQL only)."""
    if dialect_name(db) == "postgresql":
        await db.execute(select(func.pg_advisory_xact_lock(task_id)))


def _describe(entry: RequirementEntry) -> dict:
    return {"requirement_id": entry.requirement_id, "value": entry.value}


async def upsert_leaf_entry(
    db: AsyncSession,
    scope: AccessScope,
    requirement_id: int,
    entry_date: date,
    raw_value: str,
) -> List[RequirementEntry]:
    """Record a leaf value for a day and recompute its ancestors.

    Returns the written entries leaf first, root last. Nothing is written
    unless every step succeeds.
    """
    requirement = await stores.get_requirement_skeleton(db, requirement_id)
    task = await stores.get_task_skeleton(db, requirement.task_id)
    scope.ensure_can_write(task.owner_id, resource="requirement")

    revision_uuid = (await resolve_snapshot(db, task.id, entry_date)).revision_uuid
    leaf = await stores.get_requirement_snapshot(db, revision_uuid, requirement_id)
    if leaf.type == "condition":
        raise InvalidOperationError(
            f"requirement {requirement_id} is a condition; its value is derived from its operands",
            requirement_id=requirement_id,
        )
    validate(raw_value, leaf.data_type)

    with TimedOperation() as timer:
        async with transaction(db):
            await lock_task(db, task.id)
            leaf_entry = await stores.upsert_requirement_entry(
                db, requirement_id, entry_date, revision_uuid, raw_value,
            )
            chain = [leaf_entry]

            if leaf.parent_id is None:
                completed = evaluate_atom(leaf, leaf_entry.value)
            else:
                tree = await stores.get_revision_tree(db, revision_uuid)
                entries = await stores.get_entries_for_date(db, tree.nodes.keys(), revision_uuid, entry_date)
                values = {skeleton_id: e.value for skeleton_id, e in entries.items()}
                values[requirement_id] = leaf_entry.value

                results = recompute_chain(tree, requirement_id, values)
                for skeleton_id, truth in results:
                    chain.append(await stores.upsert_requirement_entry(
                        db, skeleton_id, entry_date, revision_uuid, format_bool(truth),
                    ))
                completed = results[-1][1]

            await stores.upsert_task_entry(db, task.id, entry_date, completed)

    logger.debug(f"Task {task.id} on {entry_date}: completed={completed}")
    log_propagation(requirement_id, [_describe(e) for e in chain], timer.duration_ms)
    return chain


async def evaluate_stored_entry(db: AsyncSession, entry: RequirementEntry) -> bool:
    """Judge an entry against the revision it was recorded under."""
    snapshot = await stores.get_requirement_snapshot(db, entry.revision_uuid, entry.requirement_id)
    return evaluate_node(snapshot, entry.value)
