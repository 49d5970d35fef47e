"""Outcome types returned by every remote call and extraction step.

``Ok`` carries a payload, ``Empty`` means the source was reachable but held
nothing usable, ``Failed`` means the data could not be obtained right now.
Callers branch on the type instead of null-checking.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union


T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Empty:
    reason: str = ""


@dataclass(frozen=True)
class Failed:
    reason: str


Outcome = Union[Ok[T], Empty, Failed]
