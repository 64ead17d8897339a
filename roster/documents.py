"""PDF documents issued by the secretariat (ReportLab, A4)."""
from datetime import date
from io import BytesIO
from typing import Any, Dict, Iterable, List, Mapping, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from ingestion.schemas import STAGES

from .report_card import format_grade, recovery_subjects, report_rows

MISSING = "N/A"
MONTHS = [
    "janeiro", "fevereiro", "março", "abril", "maio", "junho",
    "julho", "agosto", "setembro", "outubro", "novembro", "dezembro",
]

_styles = getSampleStyleSheet()
TITLE = ParagraphStyle("DocTitle", parent=_styles["Heading1"], alignment=TA_CENTER,
                       fontName="Helvetica-Bold", fontSize=16, spaceAfter=12)
HEADER = ParagraphStyle("SchoolHeader", parent=_styles["Normal"], alignment=TA_CENTER,
                        fontName="Helvetica-Bold", fontSize=9, leading=11)
BODY = ParagraphStyle("DocBody", parent=_styles["Normal"], alignment=TA_JUSTIFY,
                      fontSize=11, leading=16, firstLineIndent=12 * mm, spaceAfter=8)
RIGHT = ParagraphStyle("DocRight", parent=BODY, alignment=TA_RIGHT, firstLineIndent=0)
SIGNATURE = ParagraphStyle("Signature", parent=_styles["Normal"], alignment=TA_CENTER, fontSize=10)


def field(student: Mapping[str, Any], key: str) -> str:
    value = student.get(key)
    if value in (None, "") or isinstance(value, bool):
        return MISSING
    return escape(str(value))


def long_date(day: date) -> str:
    return f"{day.day} de {MONTHS[day.month - 1]} de {day.year}"


def _header(school: Mapping[str, Any]) -> List[Any]:
    lines = [school.get("name") or ""] + list(school.get("header_lines") or [])
    return [Paragraph(escape(line), HEADER) for line in lines if line] + [Spacer(1, 10 * mm)]


def _closing(school: Mapping[str, Any], today: date) -> List[Any]:
    return [
        Spacer(1, 10 * mm),
        Paragraph(f"{escape(school.get('city') or '')}, {long_date(today)}.", RIGHT),
        Spacer(1, 20 * mm),
        Paragraph("_" * 40, SIGNATURE),
        Paragraph("Secretaria Escolar", SIGNATURE),
    ]


def _build(elements: List[Any], title: str) -> BytesIO:
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, title=title,
                            leftMargin=20 * mm, rightMargin=20 * mm,
                            topMargin=15 * mm, bottomMargin=15 * mm)
    doc.build(elements)
    buffer.seek(0)
    return buffer


def _enrollment_paragraphs(student: Mapping[str, Any], year: int) -> List[Any]:
    paragraphs = [
        Paragraph(
            f"Declaramos, para os devidos fins, que <b>{field(student, 'nome')}</b>, "
            f"filho(a) de {field(student, 'filiacao_1')} e {field(student, 'filiacao_2')}, "
            f"com data de nascimento em {field(student, 'data_nascimento')}, está regularmente "
            f"matriculado(a) nesta instituição de ensino no ano letivo de {year}.",
            BODY,
        ),
        Paragraph(
            f"O(A) aluno(a) está cursando a <b>{field(student, 'serie')}</b> do "
            f"<b>{field(student, 'ensino')}</b>, na classe <b>{field(student, 'classe')}</b>, "
            f"no turno da <b>{field(student, 'turno')}</b>, e possui o Registro do Aluno (RM) "
            f"nº <b>{field(student, 'rm')}</b> e ID Censo nº <b>{field(student, 'id_censo')}</b>.",
            BODY,
        ),
    ]
    nee = student.get("nee")
    if isinstance(nee, str) and nee.strip():
        paragraphs.append(Paragraph(
            "Consta em nossos registros que o(a) aluno(a) possui a seguinte necessidade "
            f"educacional especial: <b>{escape(nee.strip())}</b>.",
            BODY,
        ))
    return paragraphs


def declaration_pdf(student: Mapping[str, Any], school: Mapping[str, Any],
                    today: Optional[date] = None) -> BytesIO:
    today = today or date.today()
    elements = _header(school) + [Paragraph("DECLARAÇÃO", TITLE), Spacer(1, 6 * mm)]
    elements += _enrollment_paragraphs(student, today.year)
    elements.append(Paragraph("Observações: Frequência Bimestral em 100%", BODY))
    elements += _closing(school, today)
    return _build(elements, "Declaração")


def transfer_declaration_pdf(student: Mapping[str, Any], school: Mapping[str, Any],
                             target_year: Optional[int] = None, today: Optional[date] = None) -> BytesIO:
    today = today or date.today()
    target_year = target_year or today.year + 1
    elements = _header(school) + [Paragraph("DECLARAÇÃO DE TRANSFERÊNCIA", TITLE), Spacer(1, 6 * mm)]
    elements += _enrollment_paragraphs(student, today.year)
    elements.append(Paragraph(
        f"Informamos que foi solicitada a <b>transferência</b> do(a) referido(a) aluno(a) "
        f"para o ano letivo de <b>{target_year}</b>.",
        BODY,
    ))
    elements += _closing(school, today)
    return _build(elements, "Declaração de Transferência")


def grade_table(boletim: Optional[Mapping[str, Any]]) -> Optional[Table]:
    rows = report_rows(boletim)
    if not rows:
        return None
    data = [["Disciplina", "Etapa 1", "Etapa 2", "Etapa 3", "Etapa 4", "Média"]]
    for row in rows:
        data.append([row["label"]] + [format_grade(row[s]) for s in STAGES] + [format_grade(row["average"])])
    table = Table(data, colWidths=[60 * mm] + [22 * mm] * 5, repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1F4E79")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("ALIGN", (1, 0), (-1, -1), "CENTER"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#F2F2F2")]),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]))
    return table


def report_card_pdf(student: Mapping[str, Any], school: Mapping[str, Any],
                    today: Optional[date] = None) -> BytesIO:
    today = today or date.today()
    elements = _header(school) + [Paragraph("BOLETIM ESCOLAR", TITLE)]
    elements.append(Paragraph(
        f"Aluno(a): <b>{field(student, 'nome')}</b> &nbsp; RM: <b>{field(student, 'rm')}</b> &nbsp; "
        f"Série: {field(student, 'serie')} &nbsp; Classe: {field(student, 'classe')} &nbsp; "
        f"Turno: {field(student, 'turno')}",
        _styles["Normal"],
    ))
    elements.append(Spacer(1, 6 * mm))
    table = grade_table(student.get("boletim"))
    if table is None:
        elements.append(Paragraph("Nenhuma nota encontrada para este aluno.", _styles["Italic"]))
    else:
        elements.append(table)
        pending = recovery_subjects(student.get("boletim"))
        if pending:
            names = ", ".join(escape(r["label"]) for r in pending)
            elements.append(Spacer(1, 4 * mm))
            elements.append(Paragraph(f"Disciplinas em recuperação: {names}.", _styles["Normal"]))
    elements.append(Spacer(1, 8 * mm))
    elements += _enrollment_paragraphs(student, today.year)
    elements += _closing(school, today)
    return _build(elements, "Boletim Escolar")


def class_list_pdf(students: Iterable[Mapping[str, Any]], school: Mapping[str, Any],
                   title: str, today: Optional[date] = None) -> BytesIO:
    today = today or date.today()
    data = [["Nº", "RM", "Nome", "Nascimento", "NEE"]]
    for number, student in enumerate(students, start=1):
        nee = student.get("nee")
        data.append([
            str(number),
            str(student.get("rm") or ""),
            str(student.get("nome") or ""),
            str(student.get("data_nascimento") or ""),
            "Sim" if (nee.strip() if isinstance(nee, str) else nee) else "",
        ])
    table = Table(data, colWidths=[10 * mm, 22 * mm, 90 * mm, 26 * mm, 14 * mm], repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1F4E79")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("ALIGN", (0, 0), (1, -1), "CENTER"),
    ]))
    elements = _header(school) + [
        Paragraph(escape(title), TITLE),
        Paragraph(f"{len(data) - 1} alunos &nbsp; | &nbsp; {today.strftime('%d/%m/%Y')}", _styles["Normal"]),
        Spacer(1, 4 * mm),
        table,
    ]
    return _build(elements, title)


def school_info(config: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "name": config.get("SCHOOL_NAME") or "",
        "city": config.get("SCHOOL_CITY") or "",
        "header_lines": [l for l in (config.get("SCHOOL_HEADER_LINES") or []) if l],
    }
