import io
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping

import pandas as pd

SHEET_NAME = "Alunos"


def flatten_student(student: Mapping[str, Any]) -> Dict[str, Any]:
    """One spreadsheet row per student.

    Scalars are copied, lists are joined and the grade book becomes
    ``boletim_<subject>_<stage>`` columns. Other nested objects are left out.
    """
    flat: Dict[str, Any] = {}
    for key, value in student.items():
        if key == "_id":
            continue
        if isinstance(value, (list, tuple)):
            flat[key] = ", ".join(str(v) for v in value)
        elif not isinstance(value, dict):
            flat[key] = value

    boletim = student.get("boletim")
    if isinstance(boletim, dict):
        for subject, stages in boletim.items():
            if not isinstance(stages, dict):
                continue
            for stage, grade in stages.items():
                flat[f"boletim_{subject}_{stage}"] = grade
    return flat


def export_filename(today: date = None) -> str:
    return f"Export_Alunos_{(today or date.today()).isoformat()}.xlsx"


def students_to_xlsx(students: Iterable[Mapping[str, Any]]) -> io.BytesIO:
    rows: List[Dict[str, Any]] = [flatten_student(s) for s in students]
    df = pd.DataFrame(rows)
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=SHEET_NAME, index=False)
    buf.seek(0)
    return buf
