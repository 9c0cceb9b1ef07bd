"""Exclusive project lock held for the duration of a mutating operation."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from stencil.errors import LockHeldError
from stencil.layout import ProjectLayout

logger = logging.getLogger(__name__)


@contextmanager
def project_lock(layout: ProjectLayout) -> Iterator[None]:
    """Create the lock file exclusively; remove it on exit.

    A stale lock is never broken automatically.
    """
    path = layout.lock_file
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError as exc:
        raise LockHeldError(str(path)) from exc
    with os.fdopen(fd, "w") as handle:
        handle.write(f"{os.getpid()}\n")
    logger.debug("acquired %s", path)
    try:
        yield
    finally:
        path.unlink(missing_ok=True)
        logger.debug("released %s", path)
