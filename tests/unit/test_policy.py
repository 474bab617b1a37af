import pytest

from garment_studio.engines.policy import ContentPolicyService, PolicyStatus


@pytest.fixture
def policy():
    return ContentPolicyService()


@pytest.mark.parametrize("instruction", [
    "Put this on a child model",
    "Show it on KIDS in a park",
    "ghost mannequin, kid's size",
    "Style for a toddler",
    "baby shower outfit on a baby",
])
def test_restricted_instructions_are_blocked(policy, instruction):
    decision = policy.check(instruction)

    assert decision.status == PolicyStatus.BLOCK
    assert not decision.allowed
    assert decision.terms
    assert "children" in decision.reason


@pytest.mark.parametrize("instruction", [
    "Ghost mannequin on neutral background",
    "Change the background to a sunny beach",
    "Make the kidskin leather jacket look glossy",
    "Remove the wrinkles from the shirt",
    "Make minor color corrections to the hem",
    "Recolor the dress baby blue",
    "Put the baby pink cardigan on a mannequin",
    "Ghost mannequin for a baby doll dress",
    "",
])
def test_allowed_instructions_pass(policy, instruction):
    decision = policy.check(instruction)

    assert decision.status == PolicyStatus.PASS
    assert decision.allowed
    assert decision.terms == []


def test_obfuscated_terms_are_normalized(policy):
    # Full-width letters and a zero-width joiner inside the word
    assert policy.check("Put it on a \uff43\uff48\uff49\uff4c\uff44").status == PolicyStatus.BLOCK
    assert policy.check("Put it on a ch\u200dild").status == PolicyStatus.BLOCK


def test_decision_is_deterministic(policy):
    first = policy.check("dress for kids")
    second = policy.check("dress for kids")

    assert first == second
    assert first.terms == ["kids"]


def test_custom_terms():
    policy = ContentPolicyService(restricted_terms=["logo"])

    assert policy.check("add a logo").status == PolicyStatus.BLOCK
    assert policy.check("put it on a child").status == PolicyStatus.PASS


@pytest.mark.parametrize("instruction", [
    "Show the onesie on a baby",
    "Photograph it with the baby sitting on a rug",
    "Outfit for my baby",
])
def test_baby_as_a_person_is_blocked(policy, instruction):
    decision = policy.check(instruction)

    assert decision.status == PolicyStatus.BLOCK
    assert decision.terms == ["baby"]
