from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.bookkeeping.errors import DomainError, ReferentialIntegrityError, UniquenessViolation, translate_integrity_error
from src.db.models import Category


@dataclass(frozen=True)
class CategoryNode:
    id: int
    code: str
    name_th: str
    name_en: Optional[str]
    type: str
    parent_id: Optional[int]
    is_active: bool = True


@dataclass
class CategoryTree:
    """
    Arena of category nodes indexed by id.

    Nodes refer to their parent by id only; children are derived from the index.
    """

    nodes: dict[int, CategoryNode] = field(default_factory=dict)
    _children: dict[Optional[int], list[int]] = field(default_factory=dict, repr=False)

    @classmethod
    def from_nodes(cls, nodes: Iterable[CategoryNode]) -> "CategoryTree":
        tree = cls()
        for n in nodes:
            tree.nodes[n.id] = n
        for n in sorted(tree.nodes.values(), key=lambda n: n.code):
            # A dangling parent reference is treated as a root.
            parent = n.parent_id if n.parent_id in tree.nodes else None
            tree._children.setdefault(parent, []).append(n.id)
        for nid in tree.nodes:
            tree.ancestors(nid)  # raises on cycles
        return tree

    def get(self, category_id: int) -> CategoryNode:
        try:
            return self.nodes[category_id]
        except KeyError:
            raise ReferentialIntegrityError(f"category {category_id} does not exist") from None

    def roots(self) -> list[CategoryNode]:
        return [self.nodes[i] for i in self._children.get(None, [])]

    def children(self, category_id: int) -> list[CategoryNode]:
        self.get(category_id)
        return [self.nodes[i] for i in self._children.get(category_id, [])]

    def ancestors(self, category_id: int) -> list[CategoryNode]:
        """Parent first, root last."""
        out: list[CategoryNode] = []
        seen = {category_id}
        node = self.get(category_id)
        while node.parent_id is not None and node.parent_id in self.nodes:
            if node.parent_id in seen:
                raise DomainError(f"category {category_id} is part of a parent cycle")
            seen.add(node.parent_id)
            node = self.nodes[node.parent_id]
            out.append(node)
        return out

    def path(self, category_id: int) -> list[str]:
        """Codes from the root down to `category_id`."""
        chain = [self.get(category_id), *self.ancestors(category_id)]
        return [n.code for n in reversed(chain)]

    def descendants(self, category_id: int) -> list[CategoryNode]:
        out: list[CategoryNode] = []
        stack = list(reversed(self._children.get(category_id, [])))
        while stack:
            nid = stack.pop()
            out.append(self.nodes[nid])
            stack.extend(reversed(self._children.get(nid, [])))
        return out

    def by_type(self, type_: str) -> list[CategoryNode]:
        return sorted((n for n in self.nodes.values() if n.type == type_), key=lambda n: n.code)


def _node(row: Category) -> CategoryNode:
    return CategoryNode(
        id=row.id,
        code=row.code,
        name_th=row.name_th,
        name_en=row.name_en,
        type=row.type,
        parent_id=row.parent_id,
        is_active=bool(row.is_active),
    )


def load_category_tree(session: Session, *, active_only: bool = False) -> CategoryTree:
    q = session.query(Category)
    if active_only:
        q = q.filter(Category.is_active.is_(True))
    return CategoryTree.from_nodes(_node(r) for r in q.all())


def set_category_parent(session: Session, *, category_id: int, parent_id: Optional[int]) -> Category:
    """Re-parent a category; rejects cycles and duplicate names under the new parent."""
    row = session.get(Category, category_id)
    if row is None:
        raise ReferentialIntegrityError(f"category {category_id} does not exist")
    if parent_id is not None:
        parent = session.get(Category, parent_id)
        if parent is None:
            raise ReferentialIntegrityError(f"category {parent_id} does not exist")
        tree = load_category_tree(session)
        if parent_id == category_id or category_id in {n.id for n in tree.ancestors(parent_id)}:
            raise DomainError(f"category {row.code} cannot be placed under its own descendant {parent.code}")
    sibling = (
        session.query(Category.id)
        .filter(
            Category.parent_id.is_(None) if parent_id is None else Category.parent_id == parent_id,
            Category.name_th == row.name_th,
            Category.id != row.id,
        )
        .first()
    )
    if sibling is not None:
        raise UniquenessViolation(f"a category named {row.name_th!r} already exists under that parent")
    row.parent_id = parent_id
    try:
        with session.begin_nested():
            session.flush()
    except IntegrityError as e:
        raise translate_integrity_error(e, context="set category parent") from e
    return row
