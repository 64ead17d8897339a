from typing import Any, Dict, List, Mapping, Optional

from ingestion.schemas import FINAL_AVERAGE, STAGES
from ingestion.utils import parse_grade

from .query import collation_key

PASSING_AVERAGE = 6.0


def subject_label(subject: str) -> str:
    """'lingua_portuguesa' -> 'Lingua portuguesa', 'arte-educacao' -> 'Arte/educacao'."""
    label = subject.replace("_", " ").replace("-", "/")
    return label[:1].upper() + label[1:].lower()


def format_grade(grade: Optional[float]) -> str:
    if grade is None:
        return "-"
    return f"{grade:.1f}".replace(".", ",")


def stage_average(grades: Mapping[str, Any]) -> Optional[float]:
    final = parse_grade(grades.get(FINAL_AVERAGE))
    if final is not None:
        return final
    present = [g for g in (parse_grade(grades.get(s)) for s in STAGES) if g is not None]
    if not present:
        return None
    return sum(present) / len(present)


def report_rows(boletim: Optional[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    rows = []
    for subject, grades in (boletim or {}).items():
        if not isinstance(grades, Mapping):
            continue
        row: Dict[str, Any] = {"subject": subject, "label": subject_label(subject)}
        for stage in STAGES:
            row[stage] = parse_grade(grades.get(stage))
        row["average"] = stage_average(grades)
        rows.append(row)
    return sorted(rows, key=lambda r: collation_key(r["label"]))


def recovery_subjects(boletim: Optional[Mapping[str, Any]], passing: float = PASSING_AVERAGE) -> List[Dict[str, Any]]:
    return [r for r in report_rows(boletim) if r["average"] is not None and r["average"] < passing]
