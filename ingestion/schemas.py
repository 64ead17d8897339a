from typing import Dict, List, Tuple

STUDENTS_COLLECTION = "alunos"
USERS_COLLECTION = "users"

# Column that identifies a student (RM) after header normalization
REQUIRED_COLUMN = "rm"

# Header spellings that map onto a canonical student field
HEADER_SYNONYMS: Dict[str, str] = {
    "nome_do_registro_civil": "nome",
    "nome_registro_civil": "nome",
    "nome_de_registro_civil": "nome",
    "telefone": "telefones",
    "matricula": "rm",
    "data_de_nascimento": "data_nascimento",
}

PHONE_FIELD = "telefones"
BIRTH_DATE_FIELD = "data_nascimento"
MIN_PHONE_DIGITS = 10

# Grades spreadsheets use their own identity columns
GRADE_ID_HEADERS: Tuple[str, ...] = ("matricula", "rm")
GRADE_NAME_HEADERS: Tuple[str, ...] = ("nome", "nome_do_aluno")
STAGES: Tuple[str, ...] = ("etapa1", "etapa2", "etapa3", "etapa4")
FINAL_AVERAGE = "mediaFinal"

DEFAULT_STATUS = "ATIVO"
UNLISTED_STATUS = "NÃO LISTADO"

# Database-imposed ceiling on operations per batch
BATCH_LIMIT = 500

SUPPORTED_EXTENSIONS = (".xlsx", ".csv", ".json")

ROLES: List[str] = ["Admin", "Staff", "Teacher", "Student", "Guardian"]

# Fields an edit form may change (rm is the document key and is never rewritten)
EDITABLE_FIELDS: Dict[str, type] = {
    "nome": str,
    "ensino": str,
    "serie": str,
    "classe": str,
    "turno": str,
    "data_nascimento": str,
    "filiacao_1": str,
    "filiacao_2": str,
    "endereco": str,
    "rg": str,
    "cpf_aluno": str,
    "cpffiliacao1": str,
    "nis": str,
    "id_censo": str,
    "nee": str,
    "status": str,
    "telefones": list,
    "transporte_escolar": bool,
    "carteira_estudante": bool,
}
