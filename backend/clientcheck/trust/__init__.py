"""Trust & abuse-control package integration helpers exposed to the application."""

from clientcheck.trust.api import router
from clientcheck.trust.domain.container import configure, configure_postgres
from clientcheck.trust.workers.runner import spawn_workers

__all__ = ["router", "configure", "configure_postgres", "spawn_workers"]
