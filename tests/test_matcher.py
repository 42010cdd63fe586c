"""Tests for content model matching."""

from itertools import permutations

import pytest

from xsd_engine.exceptions import ContentModelViolation
from xsd_engine.matcher import match
from xsd_engine.model import ElementDeclaration
from xsd_engine.particles import (
    ElementParticle,
    GroupParticle,
    NamespaceConstraint,
    WildcardParticle,
)
from xsd_engine.qnames import QName


def element(local, min_occurs=1, max_occurs=1):
    return ElementParticle(ElementDeclaration(QName(None, local)), min_occurs, max_occurs)


def names(*locals_):
    return [QName(None, local) for local in locals_]


def abcd_model():
    """sequence(A, choice(B, C), D)"""
    return GroupParticle(
        "sequence",
        (element("A"), GroupParticle("choice", (element("B"), element("C"))), element("D")),
    )


def test_sequence_with_choice_accepts_either_branch():
    for branch in ("B", "C"):
        assignment = match(abcd_model(), names("A", branch, "D"))
        assert [entry.declaration.name.local for entry in assignment] == ["A", branch, "D"]
        assert [entry.index for entry in assignment] == [0, 1, 2]


def test_missing_choice_reports_position_and_alternatives():
    with pytest.raises(ContentModelViolation) as excinfo:
        match(abcd_model(), names("A", "D"))
    violation = excinfo.value
    assert violation.position == 1
    assert set(violation.expected) == {"B", "C"}
    assert violation.actual == "D"
    assert violation.kind == "unexpected_element"


def test_content_ending_early():
    with pytest.raises(ContentModelViolation) as excinfo:
        match(abcd_model(), names("A", "B"))
    assert excinfo.value.position == 2
    assert excinfo.value.expected == ["D"]
    assert excinfo.value.actual is None
    assert excinfo.value.kind == "missing_element"


def test_extra_trailing_element():
    with pytest.raises(ContentModelViolation) as excinfo:
        match(abcd_model(), names("A", "B", "D", "D"))
    assert excinfo.value.position == 3
    assert excinfo.value.kind == "unexpected_element"
    assert len(excinfo.value.partial) == 3


def test_all_group_accepts_every_order():
    model = GroupParticle("all", (element("A"), element("B"), element("C")))
    for order in permutations("ABC"):
        assignment = match(model, names(*order))
        assert [entry.declaration.name.local for entry in assignment] == list(order)


def test_all_group_rejects_unknown_child():
    model = GroupParticle("all", (element("A"), element("B"), element("C")))
    with pytest.raises(ContentModelViolation) as excinfo:
        match(model, names("B", "A", "C", "X"))
    assert excinfo.value.position == 3
    assert excinfo.value.actual == "X"


def test_all_group_optional_member_and_duplicates():
    model = GroupParticle("all", (element("A"), element("B", min_occurs=0)))
    assert len(match(model, names("A"))) == 1
    with pytest.raises(ContentModelViolation):
        match(model, names("A", "A"))
    with pytest.raises(ContentModelViolation) as excinfo:
        match(model, names("B"))
    assert excinfo.value.kind == "missing_element"


def test_occurrence_bounds():
    model = GroupParticle("sequence", (element("A", 2, 3),))
    with pytest.raises(ContentModelViolation):
        match(model, names("A"))
    assert len(match(model, names("A", "A"))) == 2
    assert len(match(model, names("A", "A", "A"))) == 3
    with pytest.raises(ContentModelViolation):
        match(model, names("A", "A", "A", "A"))


def test_unbounded_repetition_of_group():
    pair = GroupParticle("sequence", (element("K"), element("V")), 0, None)
    model = GroupParticle("sequence", (pair,))
    assert len(match(model, [])) == 0
    assert len(match(model, names("K", "V", "K", "V", "K", "V"))) == 6
    with pytest.raises(ContentModelViolation):
        match(model, names("K", "V", "K"))


def test_optional_then_required_same_name():
    """a?, a: a single child must go to the required particle."""
    first = element("a", 0, 1)
    second = element("a")
    model = GroupParticle("sequence", (first, second))
    assignment = match(model, names("a"))
    assert assignment[0].particle is second
    assert [e.particle for e in match(model, names("a", "a"))] == [first, second]


def test_choice_prefers_declared_element_over_wildcard():
    wildcard = WildcardParticle(NamespaceConstraint("any"), "lax")
    named = element("A")
    model = GroupParticle("choice", (wildcard, named))
    entry = match(model, names("A"))[0]
    assert entry.particle is named
    assert entry.declaration is named.element

    other = match(model, names("Z"))[0]
    assert other.particle is wildcard
    assert other.declaration is None


def test_wildcard_namespace_constraint():
    other = WildcardParticle(NamespaceConstraint.parse("##other", "urn:a"), "skip", 0, None)
    model = GroupParticle("sequence", (other,))
    assert len(match(model, [QName("urn:b", "x"), QName("urn:c", "y")])) == 2
    with pytest.raises(ContentModelViolation):
        match(model, [QName("urn:a", "x")])
    with pytest.raises(ContentModelViolation):
        match(model, [QName(None, "x")])


def test_empty_content_model():
    assert len(match(None, [])) == 0
    with pytest.raises(ContentModelViolation) as excinfo:
        match(None, names("A"))
    assert excinfo.value.position == 0


def test_empty_choice_matches_nothing():
    model = GroupParticle("sequence", (GroupParticle("choice", ()),))
    assert len(match(model, [])) == 0


def test_nesting_depth_limit():
    model = element("A")
    for _ in range(10):
        model = GroupParticle("sequence", (model,))
    assert len(match(model, names("A"))) == 1
    with pytest.raises(ContentModelViolation) as excinfo:
        match(model, names("A"), max_depth=5)
    assert excinfo.value.kind == "depth_exceeded"
