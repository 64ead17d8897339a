import logging
import math
import threading
from typing import Any, Dict, List, Optional, Sequence

from bson.errors import BSONError
from pymongo import DeleteOne, ReplaceOne, UpdateOne
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from .errors import DocumentWriteError, EmptyFileError, IngestionError, InvalidStageError, MissingColumnError
from .events import WRITE_ERROR, ErrorEmitter, write_errors
from .schemas import (
    BATCH_LIMIT,
    BIRTH_DATE_FIELD,
    GRADE_ID_HEADERS,
    GRADE_NAME_HEADERS,
    STAGES,
    STUDENTS_COLLECTION,
    UNLISTED_STATUS,
    USERS_COLLECTION,
)
from .utils import (
    chunked,
    is_blank,
    normalize_header,
    normalize_rows,
    parse_grade,
    registration_number,
    shift_date_string,
)

logger = logging.getLogger(__name__)


def get_collection(mongo_db, name: str) -> Collection:
    if name == STUDENTS_COLLECTION:
        return mongo_db.alunos
    if name == USERS_COLLECTION:
        return mongo_db.users
    raise ValueError(f"Unsupported collection: {name}")


def commit_batches(collection, operations: Sequence[Any], path: str, operation: str = "write",
                   batch_size: int = BATCH_LIMIT, emitter: ErrorEmitter = write_errors) -> Dict[str, Any]:
    """Write ``operations`` in batches of at most ``batch_size``.

    Batches are independent: a failed batch is reported once through
    ``emitter`` and the following batches are still attempted. Nothing is
    rolled back and nothing is retried.
    """
    summary: Dict[str, Any] = {
        "operations": len(operations),
        "batches": 0,
        "committed": 0,
        "written": 0,
        "failed": [],
        "errors": [],
    }
    for number, batch in enumerate(chunked(operations, batch_size), start=1):
        summary["batches"] += 1
        try:
            collection.bulk_write(batch, ordered=False)
        except (PyMongoError, BSONError) as e:
            logger.warning("Batch %d (%d ops) on %s failed: %s", number, len(batch), path, e)
            summary["failed"].append(number)
            error = DocumentWriteError(path, operation, {"batch": number, "size": len(batch)}, cause=e)
            summary["errors"].append(str(error))
            emitter.emit(WRITE_ERROR, error)
            continue
        summary["committed"] += 1
        summary["written"] += len(batch)
    logger.info("Committed %d/%d batches on %s", summary["committed"], summary["batches"], path)
    return summary


def commit_batches_non_blocking(collection, operations: Sequence[Any], path: str,
                                operation: str = "write", **kwargs) -> threading.Thread:
    """Start committing on a background thread; failures only reach the emitter."""
    worker = threading.Thread(
        target=commit_batches,
        args=(collection, list(operations), path, operation),
        kwargs=kwargs,
        name=f"commit-{path}",
        daemon=True,
    )
    worker.start()
    return worker


def submit_writes(collection, operations: Sequence[Any], path: str, operation: str = "write",
                  non_blocking: bool = False) -> Dict[str, Any]:
    if not non_blocking:
        return commit_batches(collection, operations, path, operation)
    commit_batches_non_blocking(collection, operations, path, operation)
    return {
        "operations": len(operations),
        "batches": math.ceil(len(operations) / BATCH_LIMIT),
        "pending": True,
    }


def ingest_students(table: Sequence[Sequence[Any]], collection, non_blocking: bool = False) -> Dict[str, Any]:
    records, dropped = normalize_rows(table)
    ops = [UpdateOne({"_id": rec["rm"]}, {"$set": rec}, upsert=True) for rec in records]
    summary = {
        "received": len(table) - 1,
        "valid": len(records),
        "dropped": dropped,
    }
    if ops:
        summary["writes"] = submit_writes(collection, ops, STUDENTS_COLLECTION, "update", non_blocking)
    return summary


def _find_index(headers: List[str], candidates) -> Optional[int]:
    for i, h in enumerate(headers):
        if h in candidates:
            return i
    return None


def build_grade_operations(table: Sequence[Sequence[Any]], stage: str, collection) -> Dict[str, Any]:
    if stage not in STAGES:
        raise InvalidStageError("Select the stage (etapa1 to etapa4) these grades belong to.")
    if not table or len(table) < 2:
        raise EmptyFileError("The grades sheet is empty or only has headers.")

    headers = [normalize_header(h) for h in table[0]]
    rm_index = _find_index(headers, GRADE_ID_HEADERS)
    if rm_index is None:
        raise MissingColumnError("Matrícula", "The 'Matrícula' or 'RM' column is required in the grades sheet.")
    name_index = _find_index(headers, GRADE_NAME_HEADERS)
    subjects = [
        (i, h) for i, h in enumerate(headers)
        if h and i not in (rm_index, name_index)
    ]

    rows = []
    for row in table[1:]:
        rm = registration_number(row[rm_index]) if rm_index < len(row) else None
        if rm:
            rows.append((rm, row))

    existing = set()
    if rows:
        cursor = collection.find({"_id": {"$in": [rm for rm, _ in rows]}}, {"_id": 1})
        existing = {doc["_id"] for doc in cursor}

    ops = []
    updated = created = 0
    for rm, row in rows:
        grades = {
            subject: parse_grade(row[i] if i < len(row) else None)
            for i, subject in subjects
        }
        if rm in existing:
            ops.append(UpdateOne(
                {"_id": rm},
                {"$set": {f"boletim.{subject}.{stage}": grade for subject, grade in grades.items()}},
            ))
            updated += 1
            continue
        name = row[name_index] if name_index is not None and name_index < len(row) else None
        ops.append(ReplaceOne({"_id": rm}, {
            "rm": rm,
            "nome": f"Aluno {rm}" if is_blank(name) else str(name).strip(),
            "status": UNLISTED_STATUS,
            "boletim": {subject: {stage: grade} for subject, grade in grades.items()},
        }, upsert=True))
        existing.add(rm)
        created += 1

    return {"operations": ops, "updated": updated, "created": created, "subjects": [s for _, s in subjects]}


def apply_grades(table: Sequence[Sequence[Any]], stage: str, collection, non_blocking: bool = False) -> Dict[str, Any]:
    plan = build_grade_operations(table, stage, collection)
    ops = plan.pop("operations")
    summary = dict(plan, stage=stage)
    if ops:
        summary["writes"] = submit_writes(collection, ops, STUDENTS_COLLECTION, "update", non_blocking)
    return summary


def grade_book_update(changes: Any) -> Dict[str, Any]:
    """Dotted ``$set`` paths for a manual ``{subject: {stage: grade}}`` edit."""
    if not isinstance(changes, dict) or not changes:
        raise IngestionError("Send the grades as {subject: {stage: grade}}.")
    update: Dict[str, Any] = {}
    for subject, grades in changes.items():
        subject = str(subject).strip()
        if not subject or "." in subject or subject.startswith("$") or not isinstance(grades, dict):
            raise IngestionError(f"Invalid subject: {subject!r}.")
        for stage, value in grades.items():
            if stage not in STAGES:
                raise InvalidStageError(f"Unknown stage '{stage}' for {subject}; use etapa1 to etapa4.")
            update[f"boletim.{subject}.{stage}"] = parse_grade(value)
    if not update:
        raise IngestionError("No grades were provided.")
    return update


def delete_all_students(collection) -> Dict[str, Any]:
    ids = [doc["_id"] for doc in collection.find({}, {"_id": 1})]
    if not ids:
        return {"found": 0, "deleted": 0, "batches": 0, "failed": []}
    writes = commit_batches(collection, [DeleteOne({"_id": i}) for i in ids], STUDENTS_COLLECTION, "delete")
    return {"found": len(ids), "deleted": writes["written"], "batches": writes["batches"], "failed": writes["failed"]}


def correct_birth_dates(collection, days: int = 1) -> Dict[str, Any]:
    """Shift every stored DD/MM/YYYY birth date by ``days``."""
    ops = []
    for doc in collection.find({BIRTH_DATE_FIELD: {"$type": "string"}}, {BIRTH_DATE_FIELD: 1}):
        moved = shift_date_string(doc.get(BIRTH_DATE_FIELD), days)
        if moved is not None:
            ops.append(UpdateOne({"_id": doc["_id"]}, {"$set": {BIRTH_DATE_FIELD: moved}}))
    if not ops:
        return {"corrected": 0, "failed": []}
    writes = commit_batches(collection, ops, STUDENTS_COLLECTION, "update")
    return {"corrected": writes["written"], "failed": writes["failed"]}
