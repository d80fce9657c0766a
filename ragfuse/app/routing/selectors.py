from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from ragfuse.core.errors import ConfigError


class RouteSelector(Protocol):
    def select(self, query: str, available: Sequence[str]) -> list[str]: ...


class AllSelector:
    name = "all"

    def select(self, query: str, available: Sequence[str]) -> list[str]:
        _ = query
        return list(available)


@dataclass(frozen=True)
class KeywordSelector:
    """Picks every backend whose keyword list has a substring hit in the query.

    Backends are returned in rule order, each at most once.
    """

    rules: Sequence[tuple[str, Sequence[str]]] = field(default_factory=tuple)
    case_sensitive: bool = False
    name: str = "keyword"

    def __post_init__(self) -> None:
        rules = self.rules
        if isinstance(rules, Mapping):
            rules = list(rules.items())
        object.__setattr__(
            self,
            "rules",
            tuple((backend, tuple(keywords)) for backend, keywords in rules),
        )

    def select(self, query: str, available: Sequence[str]) -> list[str]:
        _ = available
        haystack = query if self.case_sensitive else query.lower()
        selected: list[str] = []
        for backend, keywords in self.rules:
            if backend in selected:
                continue
            for keyword in keywords:
                needle = keyword if self.case_sensitive else keyword.lower()
                if needle and needle in haystack:
                    selected.append(backend)
                    break
        return selected


@dataclass(frozen=True)
class PrioritySelector:
    order: tuple[str, ...] = tuple()
    name: str = "priority"

    def __post_init__(self) -> None:
        if not self.order:
            raise ConfigError("PrioritySelector requires at least one backend name")
        object.__setattr__(self, "order", tuple(self.order))

    def select(self, query: str, available: Sequence[str]) -> list[str]:
        _ = query, available
        return list(self.order)
