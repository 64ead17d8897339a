import io
from datetime import date

import pandas as pd
import pytest

from roster.documents import (
    class_list_pdf,
    declaration_pdf,
    field,
    long_date,
    report_card_pdf,
    school_info,
    transfer_declaration_pdf,
)
from roster.export import export_filename, flatten_student, students_to_xlsx
from roster.report_card import format_grade, recovery_subjects, report_rows, stage_average, subject_label

from conftest import make_student

SCHOOL = school_info({
    "SCHOOL_NAME": "E.E. Professora Maria",
    "SCHOOL_CITY": "Campinas",
    "SCHOOL_HEADER_LINES": ["Rua das Flores, 100", ""],
})

STUDENT = make_student(
    "123", "Ana <Souza>",
    serie="2º ANO", classe="A", turno="MANHÃ", ensino="FUNDAMENTAL",
    data_nascimento="01/01/2015", nee="TEA", telefones=["11987654321", "1133334444"],
    boletim={
        "lingua_portuguesa": {"etapa1": 7.0, "etapa2": 8.0},
        "matematica": {"etapa1": 4.0, "etapa2": 5.0, "mediaFinal": None},
        "arte-educacao": {"mediaFinal": 9.0, "etapa1": 2.0},
    },
)


def test_subject_label():
    assert subject_label("lingua_portuguesa") == "Lingua portuguesa"
    assert subject_label("arte-educacao") == "Arte/educacao"
    assert subject_label("EDUCACAO_FISICA") == "Educacao fisica"


def test_format_grade():
    assert format_grade(None) == "-"
    assert format_grade(7.25) == "7,2"
    assert format_grade(8) == "8,0"


def test_stage_average_prefers_final_average():
    assert stage_average({"etapa1": 2.0, "mediaFinal": 9.0}) == 9.0
    assert stage_average({"etapa1": 6.0, "etapa3": "8"}) == 7.0
    assert stage_average({}) is None


def test_report_rows_sorted_by_label():
    rows = report_rows(STUDENT["boletim"])
    assert [r["label"] for r in rows] == ["Arte/educacao", "Lingua portuguesa", "Matematica"]
    assert rows[1]["etapa2"] == 8.0
    assert rows[1]["etapa3"] is None


def test_recovery_subjects():
    assert [r["subject"] for r in recovery_subjects(STUDENT["boletim"])] == ["matematica"]
    assert recovery_subjects(None) == []


def test_field_escapes_and_defaults():
    assert field(STUDENT, "nome") == "Ana &lt;Souza&gt;"
    assert field(STUDENT, "id_censo") == "N/A"


def test_long_date():
    assert long_date(date(2024, 3, 5)) == "5 de março de 2024"


def test_school_info_drops_blank_lines():
    assert SCHOOL == {"name": "E.E. Professora Maria", "city": "Campinas", "header_lines": ["Rua das Flores, 100"]}


@pytest.mark.parametrize("build", [
    lambda: declaration_pdf(STUDENT, SCHOOL, today=date(2024, 5, 2)),
    lambda: transfer_declaration_pdf(STUDENT, SCHOOL, target_year=2025),
    lambda: report_card_pdf(STUDENT, SCHOOL),
    lambda: report_card_pdf(make_student("9", "Sem Notas"), SCHOOL),
    lambda: class_list_pdf([STUDENT, make_student("9", "Bia")], SCHOOL, "Lista de Alunos - 2º ANO"),
])
def test_documents_are_pdf(build):
    data = build().getvalue()
    assert data.startswith(b"%PDF")


def test_flatten_student():
    flat = flatten_student(STUDENT)
    assert "_id" not in flat
    assert "boletim" not in flat
    assert flat["telefones"] == "11987654321, 1133334444"
    assert flat["boletim_matematica_etapa2"] == 5.0
    assert flat["boletim_arte-educacao_mediaFinal"] == 9.0


def test_export_filename():
    assert export_filename(date(2024, 2, 29)) == "Export_Alunos_2024-02-29.xlsx"


def test_students_to_xlsx():
    buf = students_to_xlsx([STUDENT, make_student("7", "Bia", transporte_escolar=True)])
    df = pd.read_excel(io.BytesIO(buf.getvalue()), sheet_name="Alunos", dtype=object)
    assert list(df["rm"].astype(str)) == ["123", "7"]
    assert "boletim_lingua_portuguesa_etapa1" in df.columns
    assert "transporte_escolar" in df.columns
