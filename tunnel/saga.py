# tunnel/saga.py
"""Ordered (action, compensation) steps with forward-and-unwind execution.

Actions run in order and share a context dict. When an action raises, the
compensations of the steps that already completed run in reverse order. A
compensation that fails is logged and skipped; the original failure is what
the caller sees, wrapped in ProvisionError.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from tunnel.errors import ProvisionError

log = logging.getLogger(__name__)

Context = Dict[str, Any]


@dataclass
class Step:
    name: str
    action: Callable[[Context], None]
    compensate: Optional[Callable[[Context], None]] = None


def run_saga(steps: List[Step], ctx: Optional[Context] = None, logger=None) -> Context:
    logger = logger or log
    ctx = {} if ctx is None else ctx
    done: List[Step] = []

    for step in steps:
        try:
            step.action(ctx)
        except Exception as e:
            logger.warning(f"[saga] step {step.name!r} failed: {e}; rolling back {len(done)} step(s)")
            unwind(done, ctx, logger)
            raise ProvisionError(step.name, e) from e
        done.append(step)

    return ctx


def unwind(done: List[Step], ctx: Context, logger=None) -> None:
    logger = logger or log
    for step in reversed(done):
        if step.compensate is None:
            continue
        try:
            step.compensate(ctx)
        except Exception as e:
            logger.error(f"[saga] rollback of {step.name!r} failed: {e}")
