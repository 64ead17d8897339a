import logging
import os
import secrets
from datetime import datetime
from functools import wraps

from bson.errors import InvalidId
from bson.objectid import ObjectId
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_file, session
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.security import check_password_hash, generate_password_hash

from ingestion.errors import IngestionError
from ingestion.events import WRITE_ERROR, write_errors
from ingestion.pandas_reader import read_table
from ingestion.schemas import EDITABLE_FIELDS, ROLES, STUDENTS_COLLECTION, USERS_COLLECTION
from ingestion.service import (
    apply_grades,
    correct_birth_dates,
    delete_all_students,
    get_collection,
    grade_book_update,
    ingest_students,
)
from ingestion.utils import parse_phones
from roster.documents import (
    class_list_pdf,
    declaration_pdf,
    report_card_pdf,
    school_info,
    transfer_declaration_pdf,
)
from roster.export import export_filename, students_to_xlsx
from roster.query import (
    SortState,
    StudentFilters,
    class_roster,
    filter_options,
    filter_students,
    paginate,
    parse_flag,
    sort_students,
)

# Load environment variables from a local .env file if present (development convenience)
load_dotenv()

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.getenv("SECRET_KEY", "change-me")

app.config["MONGO_URI"] = os.getenv("MONGO_URI", "mongodb://localhost:27017/escola")
app.config["ADMIN_EMAILS"] = {
    e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()
}
app.config["CLEAR_DATA_PASSWORD"] = os.getenv("CLEAR_DATA_PASSWORD", "")
app.config["NON_BLOCKING_WRITES"] = os.getenv("NON_BLOCKING_WRITES", "true").lower() != "false"
app.config["SCHOOL_NAME"] = os.getenv("SCHOOL_NAME", "")
app.config["SCHOOL_CITY"] = os.getenv("SCHOOL_CITY", "")
app.config["SCHOOL_HEADER_LINES"] = [
    line.strip() for line in os.getenv("SCHOOL_HEADER", "").split("|") if line.strip()
]

# MongoDB
mongo = PyMongo(app)
students = get_collection(mongo.db, STUDENTS_COLLECTION)
users = get_collection(mongo.db, USERS_COLLECTION)
notifications = mongo.db.admin_notifications

STUDENT_MANAGERS = ("Admin", "Staff")
STUDENT_VIEWERS = ("Admin", "Staff", "Teacher")
SIGNUP_ROLES = [r for r in ROLES if r != "Admin"]
ADDRESS_PARTS = ("endereco_cep", "endereco_rua", "endereco_numero", "endereco_bairro")


def ensure_indexes():
    users.create_index("email", unique=True)
    users.create_index([("name", 1)])
    students.create_index([("serie", 1), ("classe", 1), ("turno", 1)])
    notifications.create_index([("created_at", -1)])


def record_write_error(error):
    """Files failed background writes where admins can see them."""
    details = error.to_dict() if hasattr(error, "to_dict") else {"message": str(error)}
    logger.error("Background write failed: %s", details.get("message"))
    try:
        notifications.insert_one({
            "type": "write_error",
            "path": details.get("path"),
            "operation": details.get("operation"),
            "message": details.get("message"),
            "request_data": details.get("request_data"),
            "created_at": datetime.utcnow(),
        })
    except PyMongoError:
        logger.exception("Could not store write-error notification")


write_errors.on(WRITE_ERROR, record_write_error)


def error_response(message, status):
    return jsonify({"error": message}), status


@app.errorhandler(IngestionError)
def handle_ingestion_error(e):
    return error_response(str(e), 400)


@app.errorhandler(PyMongoError)
def handle_db_error(e):
    logger.exception("Database error on %s", request.path)
    return error_response("Database unavailable. Please try again later.", 503)


def roles_required(*roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not session.get("user_id"):
                return error_response("Please log in.", 401)
            if roles and session.get("role") not in roles:
                return error_response("You don't have permission to do that.", 403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def request_data():
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form


def public_student(doc):
    return {k: v for k, v in doc.items() if k != "_id"}


def public_user(doc):
    return {
        "uid": str(doc.get("_id")),
        "name": doc.get("name"),
        "email": doc.get("email"),
        "role": doc.get("role"),
        "created_at": doc.get("created_at").isoformat() if doc.get("created_at") else None,
    }


def find_student_or_404(rm):
    doc = students.find_one({"_id": rm})
    if doc is None:
        return None, error_response("Student not found.", 404)
    return doc, None


# -------------------------
# Accounts
# -------------------------

@app.route("/signup", methods=["POST"])
def signup():
    data = request_data()
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    role = (data.get("role") or "").strip()

    if not name or not email or not password:
        return error_response("Name, email and password are required.", 400)
    if len(password) < 6:
        return error_response("Password must be at least 6 characters.", 400)
    if role not in SIGNUP_ROLES:
        return error_response("Choose one of: " + ", ".join(SIGNUP_ROLES) + ".", 400)
    if email in app.config["ADMIN_EMAILS"]:
        role = "Admin"

    if users.find_one({"email": email}):
        return error_response("Email already registered! Please login instead.", 409)
    try:
        result = users.insert_one({
            "name": name,
            "email": email,
            "password_hash": generate_password_hash(password),
            "role": role,
            "created_at": datetime.utcnow(),
        })
    except DuplicateKeyError:
        return error_response("Email already registered! Please login instead.", 409)
    logger.info("New %s account for %s", role, email)
    return jsonify({"uid": str(result.inserted_id), "role": role, "message": "Signup successful! Please login."}), 201


@app.route("/login", methods=["POST"])
def login():
    data = request_data()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    user = users.find_one({"email": email})
    if not user or not check_password_hash(user.get("password_hash") or "", password):
        return error_response("Invalid email or password.", 401)

    session.permanent = True
    session["user"] = user["name"]
    session["role"] = user["role"]
    session["email"] = user["email"]
    session["user_id"] = str(user.get("_id"))
    return jsonify({"message": f"Welcome back, {user['name']}!", "user": public_user(user)})


@app.route("/logout")
def logout():
    session.clear()
    return jsonify({"message": "You have been logged out."})


@app.route("/admin/users")
@roles_required("Admin")
def admin_users():
    items = [public_user(u) for u in users.find({}, {"password_hash": 0}).sort("name", 1)]
    return jsonify({"items": items, "total": len(items)})


@app.route("/admin/users/<uid>/role", methods=["POST"])
@roles_required("Admin")
def admin_users_role(uid):
    try:
        oid = ObjectId(uid)
    except (InvalidId, TypeError):
        return error_response("Invalid user id.", 400)
    role = (request_data().get("role") or "").strip()
    if role not in ROLES:
        return error_response("Unknown role.", 400)
    res = users.update_one({"_id": oid}, {"$set": {"role": role}})
    if not res.matched_count:
        return error_response("User not found.", 404)
    return jsonify({"message": "User updated.", "role": role})


# -------------------------
# Uploads
# -------------------------

@app.route("/ingest/students", methods=["POST"])
@roles_required(*STUDENT_MANAGERS)
def ingest_students_upload():
    file = request.files.get("file")
    if not file or not file.filename:
        return error_response("A file is required with form field 'file'.", 400)
    table = read_table(file)
    summary = ingest_students(table, students, non_blocking=app.config["NON_BLOCKING_WRITES"])
    logger.info("Student upload %s: %d valid, %d dropped", file.filename, summary["valid"], summary["dropped"])
    summary["message"] = f"{summary['valid']} student records were loaded from {file.filename}."
    return jsonify(summary), 200


@app.route("/ingest/grades", methods=["POST"])
@roles_required(*STUDENT_MANAGERS)
def ingest_grades_upload():
    file = request.files.get("file")
    stage = (request.form.get("etapa") or "").strip()
    if not file or not file.filename or not stage:
        return error_response("Please select a file and the stage these grades belong to.", 400)
    table = read_table(file, allowed=(".xlsx", ".csv"))
    summary = apply_grades(table, stage, students, non_blocking=app.config["NON_BLOCKING_WRITES"])
    summary["message"] = (
        f"{summary['updated']} students updated and {summary['created']} new students "
        f"added with status \"NÃO LISTADO\"."
    )
    return jsonify(summary), 200


# -------------------------
# Students
# -------------------------

@app.route("/students")
@roles_required(*STUDENT_VIEWERS)
def list_students():
    all_students = list(students.find({}))
    filters = StudentFilters.from_args(request.args)
    sort = SortState.from_args(request.args)
    rows = sort_students(filter_students(all_students, filters), sort)
    page = paginate(rows, request.args.get("page", 1), request.args.get("per_page", 25))
    page["items"] = [public_student(s) for s in page["items"]]
    page["collection_total"] = len(all_students)
    page["filtered"] = filters.is_active()
    page["sort"] = {"key": sort.key, "direction": sort.direction}
    return jsonify(page)


@app.route("/students/options")
@roles_required(*STUDENT_VIEWERS)
def student_options():
    docs = students.find({}, {"ensino": 1, "serie": 1, "classe": 1, "turno": 1})
    return jsonify(filter_options(docs))


@app.route("/students/export.xlsx")
@roles_required(*STUDENT_MANAGERS)
def export_students():
    docs = list(students.find({}))
    if not docs:
        return error_response("There are no students to export.", 404)
    buf = students_to_xlsx(docs)
    logger.info("Exported %d students", len(docs))
    return send_file(
        buf,
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        as_attachment=True,
        download_name=export_filename(),
    )


@app.route("/students/<rm>")
@roles_required(*STUDENT_VIEWERS)
def get_student(rm):
    doc, err = find_student_or_404(rm)
    if err:
        return err
    return jsonify(public_student(doc))


def clean_student_update(data):
    """Validate an edit form; returns (fields to $set, errors)."""
    update, errors = {}, {}
    for key, kind in EDITABLE_FIELDS.items():
        if key not in data:
            continue
        value = data.get(key)
        if kind is bool:
            update[key] = parse_flag(value)
        elif kind is list:
            if isinstance(value, (list, tuple)):
                value = ",".join(str(v) for v in value)
            update[key] = parse_phones(value) if value else []
        else:
            value = "" if value is None else str(value).strip()
            update[key] = value or None
    if "nome" in update and not update["nome"]:
        errors["nome"] = "Name is required."

    if any(part in data for part in ADDRESS_PARTS):
        parts = [str(data.get(p) or "").strip() for p in ADDRESS_PARTS]
        update["endereco"] = "(" + " - ".join(parts) + ")" if any(parts) else None
    return update, errors


@app.route("/students/<rm>", methods=["POST"])
@roles_required(*STUDENT_MANAGERS)
def update_student(rm):
    data = request_data()
    if "rm" in data and str(data.get("rm")).strip() != rm:
        return error_response("The RM of a student cannot be changed.", 400)
    update, errors = clean_student_update(data)
    if errors:
        return jsonify({"error": "Validation failed.", "details": errors}), 400
    if not update:
        return error_response("No changes provided.", 400)
    res = students.update_one({"_id": rm}, {"$set": update})
    if not res.matched_count:
        return error_response("Student not found.", 404)
    return jsonify({"message": "Student updated.", "updated": sorted(update)})


@app.route("/students/<rm>/boletim", methods=["POST"])
@roles_required(*STUDENT_MANAGERS)
def update_student_grades(rm):
    update = grade_book_update(request.get_json(silent=True))
    res = students.update_one({"_id": rm}, {"$set": update})
    if not res.matched_count:
        return error_response("Student not found.", 404)
    logger.info("Grades of %s edited by %s: %s", rm, session.get("email"), ", ".join(sorted(update)))
    return jsonify({"message": "Grades updated.", "updated": sorted(update)})


def pdf_response(buf, name):
    return send_file(buf, mimetype="application/pdf", as_attachment=True, download_name=name)


@app.route("/students/<rm>/declaration.pdf")
@roles_required(*STUDENT_VIEWERS)
def student_declaration(rm):
    doc, err = find_student_or_404(rm)
    if err:
        return err
    return pdf_response(declaration_pdf(doc, school_info(app.config)), f"declaracao_{rm}.pdf")


@app.route("/students/<rm>/transfer.pdf")
@roles_required(*STUDENT_VIEWERS)
def student_transfer_declaration(rm):
    doc, err = find_student_or_404(rm)
    if err:
        return err
    year = request.args.get("year", type=int)
    buf = transfer_declaration_pdf(doc, school_info(app.config), target_year=year)
    return pdf_response(buf, f"transferencia_{rm}.pdf")


@app.route("/students/<rm>/report-card.pdf")
@roles_required(*STUDENT_VIEWERS)
def student_report_card(rm):
    doc, err = find_student_or_404(rm)
    if err:
        return err
    return pdf_response(report_card_pdf(doc, school_info(app.config)), f"boletim_{rm}.pdf")


@app.route("/class-list.pdf")
@roles_required(*STUDENT_VIEWERS)
def class_list():
    serie = (request.args.get("serie") or "").strip()
    turno = (request.args.get("turno") or "").strip()
    classe = (request.args.get("classe") or "").strip()
    if not serie:
        return error_response("Select at least the grade (serie) for the class list.", 400)
    rows = class_roster(students.find({}), serie=serie, turno=turno, classe=classe)
    if not rows:
        return error_response("No students found for this class.", 404)
    title = " - ".join(p for p in ("Lista de Alunos", serie, classe, turno) if p)
    return pdf_response(class_list_pdf(rows, school_info(app.config), title), "lista_alunos.pdf")


# -------------------------
# Maintenance
# -------------------------

@app.route("/admin/students/delete-all", methods=["POST"])
@roles_required("Admin")
def admin_delete_all_students():
    expected = app.config.get("CLEAR_DATA_PASSWORD") or ""
    given = request_data().get("password") or ""
    if not expected:
        return error_response("Clearing student data is disabled.", 403)
    if not secrets.compare_digest(str(given), expected):
        return error_response("Incorrect password. The operation was cancelled.", 403)
    summary = delete_all_students(students)
    if not summary["found"]:
        summary["message"] = "The database is already empty."
    else:
        summary["message"] = f"{summary['deleted']} student records were removed."
    logger.warning("Bulk delete by %s: %s", session.get("email"), summary["message"])
    return jsonify(summary)


@app.route("/admin/students/correct-birth-dates", methods=["POST"])
@roles_required("Admin")
def admin_correct_birth_dates():
    try:
        days = int(request_data().get("days", 1))
    except (TypeError, ValueError):
        return error_response("days must be an integer.", 400)
    summary = correct_birth_dates(students, days=days)
    if not summary["corrected"] and not summary["failed"]:
        return error_response("No birth dates in the DD/MM/YYYY format were found.", 404)
    summary["message"] = f"{summary['corrected']} student records were updated."
    return jsonify(summary)


@app.route("/admin/notifications")
@roles_required("Admin")
def admin_notifications():
    items = []
    for doc in notifications.find({}).sort("created_at", -1).limit(200):
        items.append({
            "id": str(doc.get("_id")),
            "type": doc.get("type"),
            "path": doc.get("path"),
            "operation": doc.get("operation"),
            "message": doc.get("message"),
            "created_at": doc.get("created_at").isoformat() if doc.get("created_at") else None,
        })
    return jsonify({"items": items})


@app.route("/admin/notifications/delete/<nid>", methods=["POST"])
@roles_required("Admin")
def admin_notifications_delete(nid):
    try:
        oid = ObjectId(nid)
    except (InvalidId, TypeError):
        return error_response("Invalid notification id.", 400)
    notifications.delete_one({"_id": oid})
    return jsonify({"message": "Notification deleted."})


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    ensure_indexes()
    app.run(debug=True)
