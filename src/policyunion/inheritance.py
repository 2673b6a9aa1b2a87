"""
Inheritance Resolver for policyunion.

Builds the resolution chain for a target document by following parent
references until a document without a parent is reached.

How it works:
    1. Start at the target and look it up by name
    2. Follow parent references, tracking the names on the active walk
    3. A name seen twice on the walk is a cycle; a missing name is an
       unknown parent; a walk longer than max_depth is too deep
    4. Reverse the walk so the chain reads root-first, target-last

The walk is iterative and never mutates the documents. Errors are raised
before any chain is built, so callers never see a partial chain.
"""

import logging
from collections.abc import Mapping
from types import MappingProxyType

from policyunion.errors import (
    CycleDetectedError,
    DepthExceededError,
    UnknownDocumentError,
    UnknownParentError,
)
from policyunion.model import PolicyDocument, ResolutionChain

log = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 32


def snapshot(documents_by_name: Mapping[str, PolicyDocument]) -> Mapping[str, PolicyDocument]:
    """Read-only copy of a document lookup, scoped to one request."""
    if isinstance(documents_by_name, MappingProxyType):
        return documents_by_name
    return MappingProxyType(dict(documents_by_name))


def resolve_chain(
    target_name: str,
    documents_by_name: Mapping[str, PolicyDocument],
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> ResolutionChain:
    """
    Resolve the inheritance chain of one target.

    Args:
        target_name: Name of the document to resolve
        documents_by_name: Every known document keyed by name
        max_depth: Longest chain allowed (target included)

    Returns:
        ResolutionChain, root-first, target-last

    Raises:
        UnknownDocumentError: The target itself is unknown
        UnknownParentError: A parent reference names an unknown document
        CycleDetectedError: The walk revisits a name; carries the cycle path
        DepthExceededError: The chain would grow past max_depth
    """
    documents = snapshot(documents_by_name)
    if target_name not in documents:
        raise UnknownDocumentError(target=target_name, document=target_name)

    walk: list[str] = []
    active: set[str] = set()
    name: str | None = target_name
    while name is not None:
        if name in active:
            start = walk.index(name)
            raise CycleDetectedError(target=target_name, cycle=[*walk[start:], name])
        if len(walk) >= max_depth:
            raise DepthExceededError(target=target_name, max_depth=max_depth, walked=[*walk, name])

        document = documents[name]
        walk.append(name)
        active.add(name)

        parent = document.parent
        if parent is not None and parent not in documents:
            raise UnknownParentError(target=target_name, document=name, parent=parent)
        name = parent

    chain = ResolutionChain(
        target=target_name,
        documents=tuple(documents[n] for n in reversed(walk)),
    )
    log.debug("Resolved chain for %s: %s", target_name, " -> ".join(chain.names))
    return chain


def resolve_all(
    documents_by_name: Mapping[str, PolicyDocument],
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> dict[str, ResolutionChain]:
    """
    Resolve the chain of every document, in declaration order.

    Raises the first inheritance error encountered.
    """
    documents = snapshot(documents_by_name)
    ordered = sorted(documents.values(), key=lambda d: d.order)
    return {
        document.name: resolve_chain(document.name, documents, max_depth=max_depth)
        for document in ordered
    }
