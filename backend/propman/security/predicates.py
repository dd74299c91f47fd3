"""
Row Predicates
===============
Declarative row filters produced by the PolicyEngine.

A predicate is plain data. The same value is:
- evaluated in-process against record dicts (matches)
- compiled to SQL by the SQLAlchemy storage adapter
- rendered as row-security policy text for PostgreSQL

Membership in another entity's rows is expressed with InSubquery.
Before a predicate reaches storage the AccessGateway resolves every
InSubquery into a literal In, so storage only ever sees concrete values.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, Mapping, Tuple


class Predicate:
    """Base class for row predicates."""

    def matches(self, record: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def __and__(self, other: "Predicate") -> "Predicate":
        return all_of(self, other)

    def __or__(self, other: "Predicate") -> "Predicate":
        return any_of(self, other)


@dataclass(frozen=True)
class Always(Predicate):
    def matches(self, record):
        return True


@dataclass(frozen=True)
class Never(Predicate):
    def matches(self, record):
        return False


ALWAYS = Always()
NEVER = Never()


@dataclass(frozen=True)
class Eq(Predicate):
    field: str
    value: Any

    def matches(self, record):
        return record.get(self.field) == self.value


@dataclass(frozen=True)
class In(Predicate):
    field: str
    values: FrozenSet[Any]

    def matches(self, record):
        return record.get(self.field) in self.values


@dataclass(frozen=True)
class Subquery:
    """Values of `field` over the rows of `entity_type` matching `where`."""
    entity_type: str
    field: str
    where: Predicate


@dataclass(frozen=True)
class InSubquery(Predicate):
    field: str
    subquery: Subquery

    def matches(self, record):
        raise TypeError(
            f"InSubquery on {self.field!r} must be resolved before evaluation"
        )


@dataclass(frozen=True)
class AllOf(Predicate):
    terms: Tuple[Predicate, ...]

    def matches(self, record):
        return all(term.matches(record) for term in self.terms)


@dataclass(frozen=True)
class AnyOf(Predicate):
    terms: Tuple[Predicate, ...]

    def matches(self, record):
        return any(term.matches(record) for term in self.terms)


def all_of(*terms: Predicate) -> Predicate:
    """Conjunction with the trivial cases folded away."""
    flat = []
    for term in terms:
        if isinstance(term, Never):
            return NEVER
        if isinstance(term, Always):
            continue
        if isinstance(term, AllOf):
            flat.extend(term.terms)
        else:
            flat.append(term)
    if not flat:
        return ALWAYS
    if len(flat) == 1:
        return flat[0]
    return AllOf(tuple(flat))


def any_of(*terms: Predicate) -> Predicate:
    """Disjunction with the trivial cases folded away."""
    flat = []
    for term in terms:
        if isinstance(term, Always):
            return ALWAYS
        if isinstance(term, Never):
            continue
        if isinstance(term, AnyOf):
            flat.extend(term.terms)
        else:
            flat.append(term)
    if not flat:
        return NEVER
    if len(flat) == 1:
        return flat[0]
    return AnyOf(tuple(flat))


def in_values(field: str, values: Iterable[Any]) -> In:
    return In(field, frozenset(values))


def is_resolved(predicate: Predicate) -> bool:
    """True when no InSubquery remains anywhere in the tree."""
    if isinstance(predicate, InSubquery):
        return False
    if isinstance(predicate, (AllOf, AnyOf)):
        return all(is_resolved(term) for term in predicate.terms)
    return True


Fetch = Callable[[str, Predicate], Awaitable[Iterable[Mapping[str, Any]]]]


async def resolve(predicate: Predicate, fetch: Fetch) -> Predicate:
    """
    Replace every InSubquery with a literal In.

    `fetch(entity_type, predicate)` must return the rows of entity_type
    matching the (already resolved) predicate. Nested subqueries are
    resolved innermost first.
    """
    if isinstance(predicate, InSubquery):
        sub = predicate.subquery
        where = await resolve(sub.where, fetch)
        rows = await fetch(sub.entity_type, where)
        values = (row.get(sub.field) for row in rows)
        return In(predicate.field, frozenset(v for v in values if v is not None))
    if isinstance(predicate, AllOf):
        return all_of(*[await resolve(term, fetch) for term in predicate.terms])
    if isinstance(predicate, AnyOf):
        return any_of(*[await resolve(term, fetch) for term in predicate.terms])
    return predicate
