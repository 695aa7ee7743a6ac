import hmac
import logging
from functools import wraps

from flask import Blueprint, Flask, current_app, g, jsonify, request

from .admin import ADMIN, Principal
from .config import ADMIN_TOKEN, DB_FILE
from .errors import AdminRequired, JobNotFound, QueueNotFound
from .runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/api/v1/admin")
attendance_bp = Blueprint("attendance", __name__, url_prefix="/api/v1/attendance")


def _runtime() -> Runtime:
    return current_app.extensions["eventq"]


def _ok(data=None, message=None, status=200):
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return jsonify(body), status


def _error(message, status):
    return jsonify({"success": False, "message": message}), status


def admin_required(f):
    """Require `Authorization: Bearer <admin token>` on a route."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("ADMIN_TOKEN")
        header = request.headers.get("Authorization", "")
        token = header[7:] if header.startswith("Bearer ") else ""
        if not expected or not token or not hmac.compare_digest(token.encode(), expected.encode()):
            logger.warning("Rejected admin request to %s from %s", request.path, request.remote_addr)
            return _error("Authentication required", 401)
        g.principal = Principal("api-admin", ADMIN)
        return f(*args, **kwargs)
    return decorated_function


@admin_bp.errorhandler(QueueNotFound)
@admin_bp.errorhandler(JobNotFound)
def _not_found(e):
    return _error(str(e), 404)


@admin_bp.errorhandler(AdminRequired)
def _forbidden(e):
    return _error(str(e), 403)


@admin_bp.errorhandler(ValueError)
def _bad_request(e):
    return _error(str(e), 400)


@admin_bp.route("/queues", methods=["GET"])
@admin_required
def all_queues():
    return _ok(_runtime().admin.all_stats(g.principal))


@admin_bp.route("/queues/<name>", methods=["GET"])
@admin_required
def queue_detail(name):
    return _ok(_runtime().admin.queue_detail(g.principal, name))


@admin_bp.route("/queues/<name>/jobs", methods=["GET"])
@admin_required
def queue_jobs(name):
    status = request.args.get("status") or None
    limit = request.args.get("limit", 50, type=int)
    return _ok(_runtime().admin.list_jobs(g.principal, name, status, limit))


@admin_bp.route("/queues/<name>/jobs/<job_id>", methods=["GET"])
@admin_required
def job_detail(name, job_id):
    return _ok(_runtime().admin.get_job(g.principal, name, job_id))


@admin_bp.route("/queues/<name>/jobs/<job_id>/retry", methods=["POST"])
@admin_required
def retry_job(name, job_id):
    _runtime().admin.retry_job(g.principal, name, job_id)
    return _ok(message="Job retried successfully")


@admin_bp.route("/queues/<name>/jobs/<job_id>", methods=["DELETE"])
@admin_required
def remove_job(name, job_id):
    _runtime().admin.remove_job(g.principal, name, job_id)
    return _ok(message="Job removed successfully")


def _json_body():
    """The request JSON if it is an object, else an empty dict."""
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _clean(name=None):
    body = request.get_json(silent=True)
    if body is None:
        body = {}
    elif not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    grace = body.get("grace")
    removed = _runtime().admin.clean(
        g.principal,
        grace_ms=int(grace) if grace is not None else None,
        status=body.get("status"),
        name=name,
    )
    return _ok(removed, message="Queue cleaned successfully" if name else "All queues cleaned successfully")


@admin_bp.route("/queues/clean", methods=["POST"])
@admin_required
def clean_all():
    return _clean()


@admin_bp.route("/queues/<name>/clean", methods=["POST"])
@admin_required
def clean_queue(name):
    return _clean(name)


@admin_bp.route("/queues/pause", methods=["POST"])
@admin_required
def pause_all():
    return _ok(_runtime().admin.pause(g.principal), message="All queues paused")


@admin_bp.route("/queues/resume", methods=["POST"])
@admin_required
def resume_all():
    return _ok(_runtime().admin.resume(g.principal), message="All queues resumed")


@admin_bp.route("/queues/<name>/pause", methods=["POST"])
@admin_required
def pause_queue(name):
    _runtime().admin.pause(g.principal, name)
    return _ok(message=f"Queue {name} paused")


@admin_bp.route("/queues/<name>/resume", methods=["POST"])
@admin_required
def resume_queue(name):
    _runtime().admin.resume(g.principal, name)
    return _ok(message=f"Queue {name} resumed")


@attendance_bp.route("/scan", methods=["POST"])
def scan():
    body = _json_body()
    codec = _runtime().codec
    if body.get("signature") is None:
        # Raw content read off the code: {"payload": ..., "signature": ...}
        result = codec.verify_scanned(body.get("qrData"))
    else:
        result = codec.verify_signed(body.get("qrData"), body.get("signature"))
    if not result.valid:
        logger.info("QR scan rejected: %s", result.error)
    return jsonify(result.to_dict()), 200 if result.valid else 400


def create_app(runtime=None, **config) -> Flask:
    app = Flask(__name__)
    app.config.update(ADMIN_TOKEN=ADMIN_TOKEN, EVENTQ_DB=DB_FILE)
    app.config.update(config)
    app.extensions["eventq"] = runtime or build_runtime(app.config["EVENTQ_DB"])
    app.register_blueprint(admin_bp)
    app.register_blueprint(attendance_bp)
    return app
