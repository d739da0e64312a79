"""Ordering of preprocessors for one page and merging of their resources."""

from __future__ import annotations

from typing import Callable, Iterable, Mapping

from pagesmith.domain.preprocessing.loader import Preprocessor
from pagesmith.domain.resources.descriptor import ResourceDescriptor


def build_chain(
    view: str,
    preprocessors: Mapping[str, Preprocessor],
    partials_of: Callable[[str], Iterable[str]],
) -> list[Preprocessor]:
    """Page preprocessor first, then each included partial's chain in inclusion order.

    Views without a preprocessor contribute nothing but their partials are
    still walked. A view is visited at most once, which also cuts include
    cycles.
    """

    chain: list[Preprocessor] = []
    seen: set[str] = set()

    def visit(name: str) -> None:
        if name in seen:
            return
        seen.add(name)
        preprocessor = preprocessors.get(name)
        if preprocessor is not None:
            chain.append(preprocessor)
        for partial in partials_of(name):
            visit(partial)

    visit(view)
    return chain


def merge_resources(chain: Iterable[Preprocessor]) -> dict[str, ResourceDescriptor]:
    """First declaration of a resource name wins."""

    merged: dict[str, ResourceDescriptor] = {}
    for preprocessor in chain:
        for name, descriptor in preprocessor.resources.items():
            merged.setdefault(name, descriptor)
    return merged


__all__ = ["build_chain", "merge_resources"]
