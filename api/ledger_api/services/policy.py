from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field

from ledger_api.core.config import (
    DEFAULT_AUTHORITATIVE_LOCAL_FIELDS,
    DEFAULT_INSIGNIFICANT_FIELD_PATTERNS,
    DEFAULT_PROVIDER_ENDPOINTS,
    DEFAULT_SIGNIFICANT_FIELD_PATTERNS,
    Settings,
)
from ledger_api.services.cao import CaoSalaryTable, parse_cao_salary_table


@dataclass(slots=True)
class SignificanceTable:
    significant: tuple[str, ...] = tuple(DEFAULT_SIGNIFICANT_FIELD_PATTERNS)
    insignificant: tuple[str, ...] = tuple(DEFAULT_INSIGNIFICANT_FIELD_PATTERNS)

    def is_significant(self, field_path: str) -> bool:
        lowered = field_path.lower()
        if any(fnmatch.fnmatchcase(lowered, pattern) for pattern in self.insignificant):
            return False
        return any(fnmatch.fnmatchcase(lowered, pattern) for pattern in self.significant)


@dataclass(slots=True)
class LedgerPolicy:
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 30
    job_retry_max_seconds: int = 600
    job_default_lease_seconds: int = 120
    job_starvation_max_age_seconds: int = 3600
    job_starvation_priority: int = 100
    session_max_runtime_seconds: int = 6 * 3600
    ingest_max_chain_retries: int = 3
    confidence_retry_penalty: float = 0.1
    confidence_partial_penalty: float = 0.3
    confidence_floor: float = 0.5
    numeric_tolerance: float = 0.01
    change_duplicate_window_seconds: int = 3600
    timeline_collapse_window_seconds: int = 3600
    contract_chain_threshold: int = 3
    conflict_escalation_hours: int = 72
    significance: SignificanceTable = field(default_factory=SignificanceTable)
    authoritative_local_fields: tuple[str, ...] = tuple(DEFAULT_AUTHORITATIVE_LOCAL_FIELDS)
    provider_endpoints: tuple[str, ...] = tuple(DEFAULT_PROVIDER_ENDPOINTS)
    cao_salary_table: CaoSalaryTable = field(default_factory=lambda: parse_cao_salary_table(None))

    @classmethod
    def from_settings(cls, settings: Settings) -> LedgerPolicy:
        return cls(
            job_max_attempts=max(1, settings.job_max_attempts),
            job_retry_base_seconds=max(0, settings.job_retry_base_seconds),
            job_retry_max_seconds=max(0, settings.job_retry_max_seconds),
            job_default_lease_seconds=max(1, settings.job_default_lease_seconds),
            job_starvation_max_age_seconds=max(1, settings.job_starvation_max_age_seconds),
            job_starvation_priority=settings.job_starvation_priority,
            session_max_runtime_seconds=max(1, settings.session_max_runtime_seconds),
            ingest_max_chain_retries=max(1, settings.ingest_max_chain_retries),
            confidence_retry_penalty=max(0.0, settings.confidence_retry_penalty),
            confidence_partial_penalty=max(0.0, settings.confidence_partial_penalty),
            confidence_floor=min(1.0, max(0.0, settings.confidence_floor)),
            numeric_tolerance=max(0.0, settings.numeric_tolerance),
            change_duplicate_window_seconds=max(0, settings.change_duplicate_window_seconds),
            timeline_collapse_window_seconds=max(0, settings.timeline_collapse_window_seconds),
            contract_chain_threshold=max(1, settings.contract_chain_threshold),
            conflict_escalation_hours=max(1, settings.conflict_escalation_hours),
            significance=SignificanceTable(
                significant=tuple(pattern.lower() for pattern in settings.significant_field_patterns),
                insignificant=tuple(pattern.lower() for pattern in settings.insignificant_field_patterns),
            ),
            authoritative_local_fields=tuple(settings.authoritative_local_fields),
            provider_endpoints=tuple(settings.provider_endpoints),
            cao_salary_table=parse_cao_salary_table(settings.cao_salary_table_json),
        )

    def is_authoritative_field(self, field_path: str) -> bool:
        return any(fnmatch.fnmatchcase(field_path, pattern) for pattern in self.authoritative_local_fields)
