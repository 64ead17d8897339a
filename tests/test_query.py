from roster.query import (
    SortState,
    StudentFilters,
    class_roster,
    collation_key,
    filter_options,
    filter_students,
    paginate,
    sort_students,
)

from conftest import make_student

ROSTER = [
    make_student("1", "Ana Souza", serie="10º ANO", classe="A", turno="MANHÃ", nee="TEA", ensino="MÉDIO"),
    make_student("2", "Ana Paula", serie="2º ANO", classe="A", turno="MANHÃ", nee=None, ensino="FUNDAMENTAL"),
    make_student("3", "bruno Lima", serie="2º ANO", classe="B", turno="TARDE", nee="  ", ensino="FUNDAMENTAL"),
    make_student("4", "Álvaro Reis", serie="2º ANO", classe="A", turno="MANHÃ", nee="Baixa visão", ensino="FUNDAMENTAL"),
    make_student("5", "Carla Dias", serie="1º ANO", classe="A", turno="TARDE", nee=False, ensino="FUNDAMENTAL"),
]


def names(students):
    return [s["nome"] for s in students]


def test_filters_are_intersected():
    filters = StudentFilters(nome="ana", nee=True)
    assert names(filter_students(ROSTER, filters)) == ["Ana Souza"]


def test_name_filter_is_case_insensitive_substring():
    assert names(filter_students(ROSTER, StudentFilters(nome="LIMA"))) == ["bruno Lima"]


def test_nee_filter_skips_blank_and_false():
    assert names(filter_students(ROSTER, StudentFilters(nee=True))) == ["Ana Souza", "Álvaro Reis"]


def test_exact_match_filters():
    filters = StudentFilters(serie="2º ANO", classe="A", turno="MANHÃ")
    assert names(filter_students(ROSTER, filters)) == ["Ana Paula", "Álvaro Reis"]


def test_from_args_treats_all_as_unset():
    filters = StudentFilters.from_args({"serie": "all", "nome": " ana ", "nee": "true"})
    assert filters == StudentFilters(nome="ana", nee=True)
    assert filters.is_active()
    assert not StudentFilters.from_args({}).is_active()


def test_collation_is_accent_insensitive_and_numeric():
    assert collation_key("2º ANO") < collation_key("10º ANO")
    assert collation_key("Álvaro") < collation_key("Ana")
    assert collation_key("ana") < collation_key("Bruno")


def test_sort_by_name():
    ordered = sort_students(ROSTER, SortState("nome"))
    assert names(ordered) == ["Álvaro Reis", "Ana Paula", "Ana Souza", "bruno Lima", "Carla Dias"]


def test_sort_by_serie_breaks_ties_by_name():
    ordered = sort_students(ROSTER, SortState("serie"))
    assert names(ordered) == ["Carla Dias", "Álvaro Reis", "Ana Paula", "bruno Lima", "Ana Souza"]


def test_descending_is_exact_reverse():
    for key in ("nome", "serie", "nee", "turno"):
        asc = sort_students(ROSTER, SortState(key))
        desc = sort_students(ROSTER, SortState(key, "descending"))
        assert desc == list(reversed(asc))


def test_toggle():
    state = SortState("nome")
    state = state.toggle("nome")
    assert state == SortState("nome", "descending")
    assert state.toggle("nome") == SortState("nome", "ascending")
    assert state.toggle("serie") == SortState("serie", "ascending")


def test_sort_state_from_args():
    assert SortState.from_args({}) == SortState("serie", "ascending")
    assert SortState.from_args({"sort": "nome", "direction": "desc"}).descending


def test_paginate():
    items = list(range(60))
    page = paginate(items, page=3, per_page=25)
    assert page["items"] == list(range(50, 60))
    assert page["pages"] == 3
    assert page["total"] == 60


def test_paginate_clamps_inputs():
    items = list(range(12))
    assert paginate(items, page=9, per_page=5)["page"] == 3
    assert paginate(items, page="x", per_page=1)["per_page"] == 5
    assert paginate(items, per_page=1000)["per_page"] == 100
    assert paginate([], page=2)["pages"] == 1


def test_filter_options():
    options = filter_options(ROSTER)
    assert options["serie"] == ["1º ANO", "2º ANO", "10º ANO"]
    assert options["turno"] == ["MANHÃ", "TARDE"]
    assert options["ensino"] == ["FUNDAMENTAL", "MÉDIO"]


def test_class_roster_orders_by_name():
    rows = class_roster(ROSTER, serie="2º ANO", turno="MANHÃ")
    assert names(rows) == ["Álvaro Reis", "Ana Paula"]
