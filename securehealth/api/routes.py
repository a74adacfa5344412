"""
Flask route handlers for the REST API.

Thin adapter over the projector and the audit sink: every authentication
and authorization failure leaves here with the same JSON shape.
"""

from datetime import datetime, timezone

import structlog
from flask import jsonify, request
from sqlalchemy import text

from securehealth.analysis import summarize_audit
from securehealth.api.auth import bearer_token, principal_required
from securehealth.database import load_record, update_record_fields
from securehealth.errors import AuthorizationError, EncryptionFailure, SecureHealthError
from securehealth.models import AuditFilter, Outcome
from securehealth.rbac import load_principal

logger = structlog.get_logger()


def _parse_time(value):
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def audit_filter_from_args(args) -> AuditFilter:
    """Build an AuditFilter from query-string arguments. Raises ValueError on bad input."""
    limit = int(args.get("limit", 100))
    page = int(args.get("page", 1))
    if limit < 1 or page < 1:
        raise ValueError("limit and page must be positive")
    outcome = args.get("outcome")
    return AuditFilter(
        since=_parse_time(args.get("since")),
        until=_parse_time(args.get("until")),
        principal_identity=args.get("principal") or None,
        subject_type=args.get("subject_type") or None,
        subject_id=args.get("subject_id") or None,
        outcome=Outcome(outcome) if outcome else None,
        limit=limit,
        offset=(page - 1) * limit,
    )


def entry_to_dict(entry) -> dict:
    return {
        "id": entry.entry_id,
        "timestamp": entry.timestamp.isoformat(),
        "principal": entry.principal_identity,
        "roles": list(entry.roles),
        "attribute": entry.attribute,
        "action": entry.action,
        "outcome": entry.outcome.value,
        "reason": entry.reason,
        "subject_type": entry.subject_type,
        "subject_id": entry.subject_id,
        "field": entry.field_name,
        "signed": entry.signature is not None,
    }


def register_routes(app, engine, configurations, projector, audit_sink, resolver):
    """Register all API routes on the Flask *app*."""

    # ── Health / info ────────────────────────────────────────────────

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({
            "service": "SecureHealth Field Access API",
            "version": "1.0.0",
            "status": "running",
            "endpoints": {
                "auth": "/api/auth/login",
                "records": "/api/records/<record_type>/<record_id>",
                "audit": "/api/audit-logs",
                "logout": "/api/auth/logout",
                "health": "/health",
            },
        })

    @app.route("/health", methods=["GET"])
    def health():
        checks = {"database": False, "configuration": False}
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            checks["database"] = True
        except Exception as e:
            logger.warning("Health check: database unavailable", error=str(e))

        checks["configuration"] = configurations.current is not None
        all_healthy = all(checks.values())

        return jsonify({
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
            "active_sessions": len(resolver.sessions),
        }), 200 if all_healthy else 503

    # ── Auth ─────────────────────────────────────────────────────────

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        if not request.is_json:
            return jsonify({"error": "Content-Type must be application/json"}), 400

        api_key = (request.json.get("api_key") or "").strip()
        if not api_key:
            return jsonify({"error": "api_key is required"}), 400

        principal = load_principal(engine, api_key)
        token = resolver.issue(principal)
        return jsonify({
            "success": True,
            "token": token,
            "user": {
                "identity": principal.identity,
                "display_name": principal.display_name,
                "roles": sorted(principal.roles),
            },
        }), 200

    @app.route("/api/auth/logout", methods=["POST"])
    @principal_required(resolver)
    def logout(principal):
        resolver.revoke(bearer_token())
        logger.info("Logged out", principal=principal.identity)
        return jsonify({"success": True, "message": "Logged out successfully"}), 200

    # ── Records ──────────────────────────────────────────────────────

    def _load_or_deny(record_type, record_id):
        record = load_record(engine, record_type, record_id)
        if record is None:
            # Same answer as a denial: existence is not disclosed.
            logger.info("Record not found", record_type=record_type, record_id=record_id)
            raise AuthorizationError()
        return record

    @app.route("/api/records/<record_type>/<record_id>", methods=["GET"])
    @principal_required(resolver)
    def get_record(principal, record_type, record_id):
        requested = None
        if "fields" in request.args:
            requested = [f.strip() for f in request.args["fields"].split(",") if f.strip()]
            if not requested:
                return jsonify({"error": "fields must name at least one field"}), 400

        record = _load_or_deny(record_type, record_id)
        projected = projector.project(principal, record, requested)
        return jsonify({
            "success": True,
            "record": projected.to_dict(),
            "partial": projected.is_partial,
            "unavailable_fields": sorted(projected.field_errors),
        }), 200

    @app.route("/api/records/<record_type>/<record_id>", methods=["PATCH"])
    @principal_required(resolver)
    def update_record(principal, record_type, record_id):
        if not request.is_json:
            return jsonify({"error": "Content-Type must be application/json"}), 400
        updates = request.json.get("fields")
        if not isinstance(updates, dict) or not updates:
            return jsonify({"error": "fields must be a non-empty object"}), 400

        record = _load_or_deny(record_type, record_id)
        accepted = projector.authorize_write(principal, record, updates)
        update_record_fields(engine, record, accepted.ciphertexts)
        return jsonify({"success": True, "updated": sorted(accepted.ciphertexts)}), 200

    # ── Audit ────────────────────────────────────────────────────────

    @app.route("/api/audit-logs", methods=["GET"])
    @principal_required(resolver)
    def audit_logs(principal):
        try:
            audit_filter = audit_filter_from_args(request.args)
        except ValueError as e:
            return jsonify({"error": "Invalid audit filter", "details": str(e)}), 400

        entries = audit_sink.query(principal, audit_filter)
        return jsonify({
            "success": True,
            "count": len(entries),
            "entries": [entry_to_dict(e) for e in entries],
        }), 200

    @app.route("/api/audit-logs/report", methods=["GET"])
    @principal_required(resolver)
    def audit_report(principal):
        try:
            audit_filter = audit_filter_from_args(request.args)
        except ValueError as e:
            return jsonify({"error": "Invalid audit filter", "details": str(e)}), 400

        entries = audit_sink.query(principal, audit_filter)
        return jsonify({"success": True, "report": summarize_audit(entries)}), 200

    # ── Error handlers ───────────────────────────────────────────────

    @app.errorhandler(SecureHealthError)
    def secure_health_error(e):
        # Denials and authentication failures share one response shape.
        message = "encryption provider failure" if isinstance(e, EncryptionFailure) else e.message
        return jsonify({"success": False, "error": message}), e.http_status

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Endpoint not found", "message": str(e)}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "message": str(e)}), 405

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({"error": "Internal server error"}), 500
