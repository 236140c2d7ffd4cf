from __future__ import annotations

import pytest

from src.bookkeeping.categories import CategoryNode, CategoryTree, load_category_tree, set_category_parent
from src.bookkeeping.errors import DomainError, ReferentialIntegrityError, UniquenessViolation
from src.bookkeeping.ledger import create_category


def _tree(session):
    exp = create_category(session, code="EXP", name_th="ค่าใช้จ่าย", name_en="Expenses")
    travel = create_category(session, code="EXP_TRAVEL", name_th="ค่าเดินทาง", parent_id=exp.id)
    taxi = create_category(session, code="EXP_TAXI", name_th="ค่าแท็กซี่", parent_id=travel.id)
    income = create_category(session, code="REV", name_th="รายได้", type="income")
    return exp, travel, taxi, income


def test_tree_navigation(session):
    exp, travel, taxi, income = _tree(session)
    tree = load_category_tree(session)

    assert [n.code for n in tree.roots()] == ["EXP", "REV"]
    assert [n.code for n in tree.children(exp.id)] == ["EXP_TRAVEL"]
    assert [n.code for n in tree.ancestors(taxi.id)] == ["EXP_TRAVEL", "EXP"]
    assert tree.path(taxi.id) == ["EXP", "EXP_TRAVEL", "EXP_TAXI"]
    assert [n.code for n in tree.descendants(exp.id)] == ["EXP_TRAVEL", "EXP_TAXI"]
    assert [n.code for n in tree.by_type("income")] == ["REV"]
    with pytest.raises(ReferentialIntegrityError):
        tree.children(9999)


def test_reparent_rejects_cycles(session):
    exp, travel, taxi, _ = _tree(session)
    with pytest.raises(DomainError):
        set_category_parent(session, category_id=exp.id, parent_id=taxi.id)
    with pytest.raises(DomainError):
        set_category_parent(session, category_id=travel.id, parent_id=travel.id)

    set_category_parent(session, category_id=taxi.id, parent_id=exp.id)
    tree = load_category_tree(session)
    assert tree.path(taxi.id) == ["EXP", "EXP_TAXI"]
    assert sorted(n.code for n in tree.children(exp.id)) == ["EXP_TAXI", "EXP_TRAVEL"]


def test_reparent_to_root_and_missing_parent(session):
    exp, travel, _, _ = _tree(session)
    set_category_parent(session, category_id=travel.id, parent_id=None)
    assert travel.parent_id is None
    assert "EXP_TRAVEL" in [n.code for n in load_category_tree(session).roots()]
    with pytest.raises(ReferentialIntegrityError):
        set_category_parent(session, category_id=travel.id, parent_id=4242)


def test_reparent_rejects_duplicate_sibling_name(session):
    exp, travel, _, income = _tree(session)
    dup = create_category(session, code="REV_TRAVEL", name_th="ค่าเดินทาง", parent_id=income.id)
    with pytest.raises(UniquenessViolation):
        set_category_parent(session, category_id=dup.id, parent_id=exp.id)


def test_dangling_parent_is_a_root_and_cycles_are_detected():
    nodes = [
        CategoryNode(id=1, code="A", name_th="ก", name_en=None, type="expense", parent_id=99),
        CategoryNode(id=2, code="B", name_th="ข", name_en=None, type="expense", parent_id=1),
    ]
    tree = CategoryTree.from_nodes(nodes)
    assert [n.code for n in tree.roots()] == ["A"]

    looped = [
        CategoryNode(id=1, code="A", name_th="ก", name_en=None, type="expense", parent_id=2),
        CategoryNode(id=2, code="B", name_th="ข", name_en=None, type="expense", parent_id=1),
    ]
    with pytest.raises(DomainError):
        CategoryTree.from_nodes(looped)
