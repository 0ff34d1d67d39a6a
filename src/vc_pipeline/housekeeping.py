"""
Housekeeping — certificate expiry, job retention and counters.

Run on a cron schedule (see scheduler.py):

  certificates.expire_due(now)            active → expired once expires_at passed
    → jobs.purge_finished(now - retention) success/failed jobs past retention
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from railway.result import Result

from vc_pipeline.domain.models import utcnow
from vc_pipeline.domain.ports import CertificateRepository, JobRepository


@dataclass(frozen=True, slots=True)
class HousekeepingReport:
    expired_certificates: int
    purged_jobs: int


def run_housekeeping(
    certificates: CertificateRepository,
    jobs: JobRepository,
    job_retention_days: int = 30,
    now: datetime | None = None,
) -> Result[HousekeepingReport]:
    now = now or utcnow()
    cutoff = now - timedelta(days=job_retention_days)
    return certificates.expire_due(now).flat_map(
        lambda expired: jobs.purge_finished(cutoff).map(
            lambda purged: HousekeepingReport(expired_certificates=expired, purged_jobs=purged)
        )
    )


def collect_stats(
    certificates: CertificateRepository, jobs: JobRepository
) -> Result[dict[str, dict[str, int]]]:
    """Certificate counts (total and per status) and job counts per status."""
    return certificates.count_by_status().flat_map(
        lambda cert_counts: jobs.count_by_status().map(
            lambda job_counts: {
                "certificates": {"total": sum(cert_counts.values()), **cert_counts},
                "jobs": dict(job_counts),
            }
        )
    )
