"""Explicit success/failure values for multi-step flows.

A step returns ``Ok(value)`` or ``Err(reason)``; callers check with
``isinstance`` and return the ``Err`` unchanged to short-circuit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from lti_gateway.errors import LaunchFailure

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    reason: LaunchFailure


Result = Union[Ok[T], Err]
