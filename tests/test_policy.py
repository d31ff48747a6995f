import pytest

from castctl.domain.errors import NotFoundError
from castctl.domain.policy import (
    RoundRobinAddresses,
    address_policy_by_name,
    first_address,
    random_address,
)


def test_first_address_picks_head() -> None:
    assert first_address(["10.0.0.5", "fe80::1"]) == "10.0.0.5"


def test_random_address_stays_within_candidates(monkeypatch) -> None:
    monkeypatch.setattr("castctl.domain.policy.random.choice", lambda seq: seq[-1])
    assert random_address(("10.0.0.5", "10.0.0.6")) == "10.0.0.6"


def test_round_robin_cycles_through_candidates() -> None:
    policy = RoundRobinAddresses()
    addresses = ("10.0.0.5", "10.0.0.6")
    assert [policy(addresses) for _ in range(3)] == ["10.0.0.5", "10.0.0.6", "10.0.0.5"]


@pytest.mark.parametrize("policy", [first_address, random_address, RoundRobinAddresses()])
def test_policies_reject_empty_list(policy) -> None:
    with pytest.raises(NotFoundError):
        policy([])


def test_policy_by_name() -> None:
    assert address_policy_by_name("first") is first_address
    assert address_policy_by_name("random") is random_address
    assert isinstance(address_policy_by_name("round_robin"), RoundRobinAddresses)
    with pytest.raises(ValueError, match="Unknown address policy"):
        address_policy_by_name("nearest")
