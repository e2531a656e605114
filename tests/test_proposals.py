import json

import pytest

from helixchain.proposals import (
    ContractUpgrade,
    EmergencyAction,
    GovernanceError,
    GovernanceErrorKind,
    ParameterChange,
    Proposal,
    ProposalStatus,
    TreasurySpend,
    ValidatorSetChange,
    Vote,
    VoteType,
    VotingStrategy,
    dynamic_requirements,
    required_deposit,
    tally_votes,
)

ALL_TYPES = [
    ParameterChange("block_time", "3", "5"),
    ContractUpgrade("0xcontract", "2.0", b"\x00\x01\xff"),
    EmergencyAction("pause_chain", b"stop"),
    ValidatorSetChange(["0xa", "0xb"], [10, 20]),
    TreasurySpend("0xrecipient", 500, "grants"),
]


def _proposal(proposal_type, votes=None):
    return Proposal(
        id="0xabc",
        title="Title",
        description="Description",
        proposer="0xproposer",
        proposal_type=proposal_type,
        start_time=100,
        end_time=200,
        votes=votes or {},
        required_quorum=10,
        required_majority=5,
    )


def _vote(voter, vote_type, power):
    return Vote(voter=voter, proposal_id="0xabc", vote_type=vote_type, voting_power=power, timestamp=150)


@pytest.mark.parametrize("proposal_type", ALL_TYPES)
def test_dict_round_trip_through_json(proposal_type):
    proposal = _proposal(proposal_type, {"0xv": _vote("0xv", VoteType.NO, 7)})
    text = json.dumps(proposal.to_dict())
    assert Proposal.from_dict(json.loads(text)) == proposal


def test_to_dict_uses_tagged_variants_and_byte_lists():
    data = _proposal(ContractUpgrade("0xc", "2.0", b"\x01\x02")).to_dict()
    assert data["proposal_type"] == {
        "ContractUpgrade": {"contract_address": "0xc", "new_version": "2.0", "upgrade_data": [1, 2]}
    }
    assert data["status"] == "Active"
    assert data["execution_tx"] is None


def test_vote_type_serialized_by_name():
    data = _proposal(ALL_TYPES[0], {"0xv": _vote("0xv", VoteType.ABSTAIN, 3)}).to_dict()
    assert data["votes"]["0xv"]["vote_type"] == "Abstain"


def test_from_dict_rejects_unknown_status():
    data = _proposal(ALL_TYPES[0]).to_dict()
    data["status"] = "Pending"
    with pytest.raises(GovernanceError) as info:
        Proposal.from_dict(data)
    assert info.value.kind is GovernanceErrorKind.SERIALIZATION_ERROR


def test_from_dict_rejects_unknown_proposal_type():
    data = _proposal(ALL_TYPES[0]).to_dict()
    data["proposal_type"] = {"Mystery": {}}
    with pytest.raises(GovernanceError) as info:
        Proposal.from_dict(data)
    assert info.value.kind is GovernanceErrorKind.SERIALIZATION_ERROR


def test_from_dict_rejects_missing_field():
    data = _proposal(ALL_TYPES[0]).to_dict()
    del data["title"]
    with pytest.raises(GovernanceError) as info:
        Proposal.from_dict(data)
    assert info.value.kind is GovernanceErrorKind.SERIALIZATION_ERROR


def test_error_message_comes_from_kind():
    assert str(GovernanceError(GovernanceErrorKind.PROPOSAL_NOT_FOUND)) == "Proposal not found"
    assert str(GovernanceError(GovernanceErrorKind.ALREADY_VOTED)) == "Already voted"


def test_tally_counts_abstain_only_in_total():
    votes = {
        "a": _vote("a", VoteType.YES, 5),
        "b": _vote("b", VoteType.NO, 3),
        "c": _vote("c", VoteType.ABSTAIN, 2),
    }
    yes, no, total = tally_votes(_proposal(ALL_TYPES[0], votes))
    assert (yes, no) == (5, 3)
    assert total == 5 + 3 + 2


def test_tally_of_no_votes_is_zero():
    assert tally_votes(_proposal(ALL_TYPES[0])) == (0, 0, 0)


def test_required_deposit_by_type():
    base = 10000
    assert required_deposit(ParameterChange("p", "a", "b"), base) == base
    assert required_deposit(ContractUpgrade("c", "v"), base) == base
    assert required_deposit(EmergencyAction("pause_chain"), base) == base * 5
    assert required_deposit(ValidatorSetChange(), base) == base * 3
    assert required_deposit(TreasurySpend("r", 1_000_000, "x"), base) == base * 2
    assert required_deposit(TreasurySpend("r", 1_000_001, "x"), base) == base * 6


def test_unanimous_requires_all_power():
    result = dynamic_requirements(ParameterChange("p", "a", "b"), 1000, 40, 50, VotingStrategy.UNANIMOUS)
    assert result == (1000, 1000)


def test_full_percentages_give_total_power():
    result = dynamic_requirements(ContractUpgrade("c", "v"), 777, 100, 100, VotingStrategy.SIMPLE)
    assert result == (777, 777)


def test_type_specific_thresholds_not_lower_than_simple():
    simple = dynamic_requirements(ParameterChange("p", "a", "b"), 1000, 40, 50, VotingStrategy.SIMPLE)
    emergency = dynamic_requirements(EmergencyAction("pause_chain"), 1000, 40, 50, VotingStrategy.SIMPLE)
    validators = dynamic_requirements(ValidatorSetChange(), 1000, 40, 50, VotingStrategy.SIMPLE)
    assert emergency[0] > simple[0] and emergency[1] > simple[1]
    assert validators[0] == simple[0] and validators[1] > simple[1]


def test_treasury_thresholds_depend_on_amount():
    simple = dynamic_requirements(ParameterChange("p", "a", "b"), 1000, 40, 50, VotingStrategy.SIMPLE)
    small = dynamic_requirements(TreasurySpend("r", 10, "x"), 1000, 40, 50, VotingStrategy.UNANIMOUS)
    large = dynamic_requirements(TreasurySpend("r", 2_000_000, "x"), 1000, 40, 50, VotingStrategy.SIMPLE)
    assert small == simple
    assert large[0] > simple[0] and large[1] > simple[1]


def test_supermajority_raises_only_majority():
    simple = dynamic_requirements(ParameterChange("p", "a", "b"), 1000, 40, 50, VotingStrategy.SIMPLE)
    superm = dynamic_requirements(ParameterChange("p", "a", "b"), 1000, 40, 50, VotingStrategy.SUPERMAJORITY)
    assert superm[0] == simple[0]
    assert superm[1] > simple[1]


def test_zero_power_gives_zero_requirements():
    assert dynamic_requirements(EmergencyAction("x"), 0, 40, 50, VotingStrategy.SIMPLE) == (0, 0)


def test_new_proposal_defaults_to_active():
    assert _proposal(ALL_TYPES[0]).status is ProposalStatus.ACTIVE