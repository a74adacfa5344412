"""
Response projector – decides, per field and per request, whether to decrypt
and expose a field, and audits every decision.

Read path: denied fields are omitted from the output (no null, no redaction
marker). A decryption failure omits only that field. Every decision is
audited before the projection is returned.

Write path: all-or-nothing. Any denied field rejects the whole write before
anything is encrypted; any encryption failure fails the whole write.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, Mapping, Optional

import structlog

from securehealth.audit import AuditSink
from securehealth.encryption import EncryptionGateway
from securehealth.errors import AuthorizationError, EncryptionFailure
from securehealth.models import (
    Action, Decision, FilteredRecord, Principal, SubjectRecord, WriteAccepted,
)

logger = structlog.get_logger()

_ABSENT = object()


@dataclass
class _FieldResult:
    field_name: str
    decision: Decision
    value: Any = _ABSENT
    error: Optional[str] = None


class ResponseProjector:

    def __init__(self, configurations, gateway: EncryptionGateway, audit_sink: AuditSink,
                 max_workers: int = 1):
        self.configurations = configurations
        self.gateway = gateway
        self.audit_sink = audit_sink
        self.max_workers = max(1, max_workers)

    # ── Read path ────────────────────────────────────────────────────

    def project(
        self,
        principal: Principal,
        record: SubjectRecord,
        requested_fields: Optional[Iterable[str]] = None,
    ) -> FilteredRecord:
        """
        Project *record* for *principal*.

        `requested_fields=None` means every field described for the record
        type. Raises AuthorizationError when no field was granted, which
        includes an empty request and a record type with no descriptors;
        otherwise returns a FilteredRecord whose `field_errors`
        lists fields lost to decryption failures.
        """
        config = self.configurations.current
        if requested_fields is None:
            requested_fields = config.sensitivity.fields_of(record.record_type)
        # De-duplicate, keep request order.
        fields = list(dict.fromkeys(requested_fields))
        expanded = config.hierarchy.expand(principal.roles)

        def run(field_name: str) -> _FieldResult:
            return self._read_field(config, principal, expanded, record, field_name)

        if self.max_workers > 1 and len(fields) > 1:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(fields))) as pool:
                futures = [pool.submit(run, f) for f in fields]
                results = [future.result() for future in futures]
        else:
            results = [run(f) for f in fields]

        projected = FilteredRecord(record.record_type, record.record_id)
        granted = 0
        for result in results:
            if not result.decision.granted:
                continue
            granted += 1
            if result.error is not None:
                projected.field_errors[result.field_name] = result.error
            elif result.value is not _ABSENT:
                projected.fields[result.field_name] = result.value

        if granted == 0:
            logger.info(
                "Projection denied",
                principal=principal.identity,
                record_type=record.record_type,
                record_id=record.record_id,
            )
            raise AuthorizationError()
        return projected

    def _read_field(self, config, principal: Principal, expanded: FrozenSet[str],
                    record: SubjectRecord, field_name: str) -> _FieldResult:
        descriptor = config.sensitivity.describe(record.record_type, field_name)
        decision = config.policy.evaluate(expanded, descriptor.read_attribute, record, principal)
        # Audit first: nothing is decrypted for a decision that is not on record.
        self.audit_sink.record_decision(principal, expanded, decision, Action.READ, field_name)

        if not decision.granted:
            logger.info(
                "Field read denied",
                principal=principal.identity,
                field=f"{record.record_type}.{field_name}",
                reason=decision.reason,
            )
            return _FieldResult(field_name, decision)

        if field_name not in record.ciphertexts:
            return _FieldResult(field_name, decision)

        try:
            value = self.gateway.decrypt(descriptor, record.ciphertexts[field_name])
        except EncryptionFailure as e:
            logger.error(
                "Field decryption failed",
                field=f"{record.record_type}.{field_name}",
                record_id=record.record_id,
                kind=e.kind,
            )
            return _FieldResult(field_name, decision, error=e.kind)
        except Exception:
            logger.exception(
                "Field decryption failed",
                field=f"{record.record_type}.{field_name}",
                record_id=record.record_id,
                kind=EncryptionFailure.kind,
            )
            return _FieldResult(field_name, decision, error=EncryptionFailure.kind)
        return _FieldResult(field_name, decision, value=value)

    # ── Write path ───────────────────────────────────────────────────

    def authorize_write(
        self,
        principal: Principal,
        record: SubjectRecord,
        field_updates: Mapping[str, Any],
    ) -> WriteAccepted:
        """
        Authorize and encrypt *field_updates* against *record*.

        Every field is evaluated and audited. If any is denied the whole
        write is rejected and nothing is encrypted.
        """
        config = self.configurations.current
        expanded = config.hierarchy.expand(principal.roles)

        descriptors = {}
        rejected = []
        for field_name in field_updates:
            descriptor = config.sensitivity.describe(record.record_type, field_name)
            decision = config.policy.evaluate(
                expanded, descriptor.write_attribute, record, principal
            )
            self.audit_sink.record_decision(principal, expanded, decision, Action.WRITE, field_name)
            if decision.granted:
                descriptors[field_name] = descriptor
            else:
                rejected.append((field_name, decision.reason))

        if rejected:
            logger.info(
                "Write rejected",
                principal=principal.identity,
                record_type=record.record_type,
                record_id=record.record_id,
                fields=[f for f, _ in rejected],
                reasons=[r for _, r in rejected],
            )
            raise AuthorizationError()

        ciphertexts = {}
        for field_name, plaintext in field_updates.items():
            try:
                ciphertexts[field_name] = self.gateway.encrypt(descriptors[field_name], plaintext)
            except EncryptionFailure as e:
                logger.error(
                    "Field encryption failed; write aborted",
                    field=f"{record.record_type}.{field_name}",
                    record_id=record.record_id,
                    kind=e.kind,
                )
                raise
        return WriteAccepted(record.record_type, record.record_id, ciphertexts)
