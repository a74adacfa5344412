"""
Operator CLI for the SecureHealth permission engine.

Usage:
    securehealth check-config --file policy.json
    securehealth audit-report --api-key <key> --since 2026-01-01 --limit 500
"""

import argparse
import sys
from datetime import datetime, timezone

from securehealth.analysis import summarize_audit
from securehealth.audit import AuditSink, SqlAuditStore
from securehealth.config import AUDIT_SIGNING_KEY, LOG_LEVEL, MAX_AUDIT_RESULTS, POLICY_FILE
from securehealth.database import PERSISTED_FIELDS, init_engine
from securehealth.errors import ConfigurationError, SecureHealthError
from securehealth.logging_config import configure_logging
from securehealth.models import AuditFilter
from securehealth.policy_config import (
    ConfigurationHolder, assert_persisted_fields_covered, default_configuration,
    load_configuration_file,
)
from securehealth.rbac import MetadataRelationshipLookup, load_principal


def _load(policy_file):
    lookup = MetadataRelationshipLookup()
    if policy_file:
        return load_configuration_file(policy_file, lookup), lookup
    return default_configuration(lookup), lookup


def check_config(args) -> int:
    try:
        configuration, _ = _load(args.file)
        assert_persisted_fields_covered(configuration, PERSISTED_FIELDS)
    except ConfigurationError as e:
        print(f"[config] INVALID: {e}", file=sys.stderr)
        return 1

    print(f"[config] OK ({args.file or 'built-in catalog'})")
    print(f"  roles:        {len(configuration.hierarchy.roles)}")
    print(f"  attributes:   {len(configuration.policy.attributes)}")
    for record_type in sorted(configuration.sensitivity.record_types):
        fields = configuration.sensitivity.fields_of(record_type)
        print(f"  {record_type}: {len(fields)} fields")
    return 0


def audit_report(args) -> int:
    try:
        configuration, lookup = _load(args.file)
        configurations = ConfigurationHolder(configuration, PERSISTED_FIELDS, lookup)
    except ConfigurationError as e:
        print(f"[config] INVALID: {e}", file=sys.stderr)
        return 1

    engine = init_engine(args.db_uri)
    sink = AuditSink(SqlAuditStore(engine, AUDIT_SIGNING_KEY), configurations)
    since = datetime.fromisoformat(args.since) if args.since else None
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)

    try:
        principal = load_principal(engine, args.api_key)
        entries = sink.query(principal, AuditFilter(since=since, limit=args.limit))
    except SecureHealthError as e:
        print(f"[audit] {e.message}", file=sys.stderr)
        return 1

    print(summarize_audit(entries))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="securehealth", description=__doc__.splitlines()[1])
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check-config", help="Validate a security configuration")
    check.add_argument("--file", default=POLICY_FILE, help="JSON configuration (default: built-in)")
    check.set_defaults(func=check_config)

    report = sub.add_parser("audit-report", help="Print a compliance report of the audit trail")
    report.add_argument("--api-key", required=True, help="API key of the requesting user")
    report.add_argument("--db-uri", default=None, help="Database URI (default: $DB_URI)")
    report.add_argument("--file", default=POLICY_FILE, help="JSON configuration (default: built-in)")
    report.add_argument("--since", default=None, help="ISO date/time lower bound")
    report.add_argument("--limit", type=int, default=MAX_AUDIT_RESULTS)
    report.set_defaults(func=audit_report)
    return parser


def main(argv=None) -> int:
    configure_logging(LOG_LEVEL)
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
