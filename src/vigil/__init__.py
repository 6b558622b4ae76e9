"""
Vigil — tamper-evident audit and security monitoring for records systems.

Vigil records every authenticated action in a hash-chained, append-only
ledger, watches the resulting event stream for brute-force and other
anomalous access patterns, manages session lifecycles, and enforces the
credential policy required for compliance-grade record keeping.

Package layout (src/vigil/):
  core/audit/        — hash chain, ledger, fallback sink, reports
  core/monitor/      — sliding-window counters, threat detection, metrics
  core/alerts/       — severity classification, incidents, notification
  core/session/      — session registry
  core/credentials/  — password policy and breach lookup
  core/store/        — SQLite persistence and migrations
  core/daemon/       — background scheduler
  cli/               — Click CLI entry point
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
