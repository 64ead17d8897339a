"""In-memory filtering, sorting and paging of the student roster.

The whole ``alunos`` collection is fetched once per request; everything below
works on plain lists of documents.
"""
import math
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

ASCENDING = "ascending"
DESCENDING = "descending"

NAME_FIELD = "nome"
NEE_FIELD = "nee"
OPTION_FIELDS = ("ensino", "serie", "classe", "turno")

DEFAULT_PER_PAGE = 25
MIN_PER_PAGE = 5
MAX_PER_PAGE = 100

_DIGIT_RUNS = re.compile(r"(\d+)")
_TRUE_STRINGS = {"1", "true", "yes", "on", "sim"}


def fold(value: Any) -> str:
    """Case- and accent-insensitive form of a value."""
    s = "" if value is None else str(value)
    decomposed = unicodedata.normalize("NFD", s)
    return "".join(c for c in decomposed if unicodedata.category(c) != "Mn").casefold()


def collation_key(value: Any) -> tuple:
    """Sort key that compares digit runs as numbers ("2º ANO" < "10º ANO")."""
    folded = fold(value)
    parts = []
    for part in _DIGIT_RUNS.split(folded):
        if not part:
            continue
        if part.isdigit():
            parts.append((0, int(part), ""))
        else:
            parts.append((1, 0, part))
    return tuple(parts), "" if value is None else str(value)


def has_special_needs(student: Mapping[str, Any]) -> bool:
    value = student.get(NEE_FIELD)
    if isinstance(value, str):
        return bool(value.strip())
    return bool(value)


def parse_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in _TRUE_STRINGS


@dataclass
class StudentFilters:
    nome: str = ""
    serie: str = ""
    classe: str = ""
    turno: str = ""
    nee: bool = False

    @classmethod
    def from_args(cls, args: Mapping[str, Any]) -> "StudentFilters":
        def text(key):
            value = (args.get(key) or "").strip()
            return "" if value == "all" else value

        return cls(
            nome=text("nome"),
            serie=text("serie"),
            classe=text("classe"),
            turno=text("turno"),
            nee=parse_flag(args.get("nee")),
        )

    def is_active(self) -> bool:
        return bool(self.nome or self.serie or self.classe or self.turno or self.nee)

    def matches(self, student: Mapping[str, Any]) -> bool:
        if self.nome and self.nome.casefold() not in str(student.get(NAME_FIELD) or "").casefold():
            return False
        for field in ("serie", "classe", "turno"):
            wanted = getattr(self, field)
            if wanted and str(student.get(field) or "") != wanted:
                return False
        if self.nee and not has_special_needs(student):
            return False
        return True


@dataclass
class SortState:
    key: str = "serie"
    direction: str = ASCENDING

    @property
    def descending(self) -> bool:
        return self.direction == DESCENDING

    def toggle(self, key: str) -> "SortState":
        """Selecting the current key again flips the direction; a new key starts ascending."""
        if key == self.key and self.direction == ASCENDING:
            return SortState(key, DESCENDING)
        return SortState(key, ASCENDING)

    @classmethod
    def from_args(cls, args: Mapping[str, Any]) -> "SortState":
        key = (args.get("sort") or "serie").strip() or "serie"
        direction = (args.get("direction") or ASCENDING).strip().lower()
        if direction in ("desc", DESCENDING):
            return cls(key, DESCENDING)
        return cls(key, ASCENDING)


def filter_students(students: Iterable[Mapping[str, Any]], filters: StudentFilters) -> List[Mapping[str, Any]]:
    return [s for s in students if filters.matches(s)]


def sort_key(student: Mapping[str, Any], key: str):
    name = collation_key(student.get(NAME_FIELD) or "")
    if key == NEE_FIELD:
        return (int(has_special_needs(student)),), name
    if key == NAME_FIELD:
        return name, ()
    return collation_key(student.get(key) or ""), name


def sort_students(students: Iterable[Mapping[str, Any]], sort: SortState) -> List[Mapping[str, Any]]:
    return sorted(students, key=lambda s: sort_key(s, sort.key), reverse=sort.descending)


def paginate(items: List[Any], page: Any = 1, per_page: Any = DEFAULT_PER_PAGE) -> Dict[str, Any]:
    try:
        page = max(1, int(page))
    except (TypeError, ValueError):
        page = 1
    try:
        per_page = min(MAX_PER_PAGE, max(MIN_PER_PAGE, int(per_page)))
    except (TypeError, ValueError):
        per_page = DEFAULT_PER_PAGE
    total = len(items)
    pages = math.ceil(total / per_page) if total else 1
    page = min(page, pages)
    start = (page - 1) * per_page
    return {
        "items": items[start:start + per_page],
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": pages,
    }


def filter_options(students: Iterable[Mapping[str, Any]], fields=OPTION_FIELDS) -> Dict[str, List[str]]:
    values: Dict[str, set] = {f: set() for f in fields}
    for student in students:
        for field in fields:
            value = student.get(field)
            if value not in (None, "") and not isinstance(value, (dict, list)):
                values[field].add(str(value))
    return {f: sorted(vs, key=collation_key) for f, vs in values.items()}


def class_roster(students: Iterable[Mapping[str, Any]], serie: Optional[str] = None,
                 turno: Optional[str] = None, classe: Optional[str] = None) -> List[Mapping[str, Any]]:
    """Students of one class, ordered by name."""
    filters = StudentFilters(serie=serie or "", turno=turno or "", classe=classe or "")
    return sort_students(filter_students(students, filters), SortState(NAME_FIELD))
