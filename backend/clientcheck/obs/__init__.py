"""Observability package bootstrap."""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI

from clientcheck.obs import logging as obs_logging
from clientcheck.obs import middleware
from clientcheck.settings import settings

_initialised = False


def init(app: Optional[FastAPI] = None) -> None:
	global _initialised
	if _initialised:
		return
	if not settings.obs_enabled:
		return
	obs_logging.configure_logging()
	if app is not None:
		middleware.install(app)
	_initialised = True


__all__ = ["init"]
