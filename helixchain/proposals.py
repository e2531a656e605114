"""Governance proposals, votes and the rules for deposits, quorum and majority."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from typing import Any, Union

LARGE_TREASURY_SPEND = 1_000_000


class GovernanceErrorKind(enum.Enum):
    PROPOSAL_NOT_FOUND = "Proposal not found"
    PARAMETER_NOT_FOUND = "Parameter not found"
    PROPOSAL_NOT_ACTIVE = "Proposal not active"
    PROPOSAL_NOT_PASSED = "Proposal not passed"
    VOTING_PERIOD_ENDED = "Voting period ended"
    INVALID_DURATION = "Invalid duration"
    INSUFFICIENT_VOTING_POWER = "Insufficient voting power"
    NO_VOTING_POWER = "No voting power"
    INVALID_PROPOSAL_TYPE = "Invalid proposal type"
    INVALID_PARAMETER = "Invalid parameter"
    INVALID_VALUE = "Invalid value"
    INVALID_ADDRESS = "Invalid address"
    INVALID_AMOUNT = "Invalid amount"
    INVALID_ACTION = "Invalid action"
    EXECUTION_FAILED = "Execution failed"
    TRANSACTION_FAILED = "Transaction failed"
    INSUFFICIENT_BALANCE = "Insufficient balance"
    DATABASE_ERROR = "Database error"
    SERIALIZATION_ERROR = "Serialization error"
    ALREADY_VOTED = "Already voted"
    SELF_DELEGATION = "Self delegation"
    DELEGATION_NOT_FOUND = "Delegation not found"


class GovernanceError(Exception):
    """Raised when a governance operation is rejected or fails."""

    def __init__(self, kind: GovernanceErrorKind, detail: str | None = None) -> None:
        super().__init__(kind.value)
        self.kind = kind
        self.detail = detail

    def __str__(self) -> str:
        return self.kind.value


class ProposalStatus(enum.Enum):
    ACTIVE = "Active"
    PASSED = "Passed"
    FAILED = "Failed"
    EXECUTED = "Executed"
    CANCELLED = "Cancelled"


class VoteType(enum.Enum):
    YES = "Yes"
    NO = "No"
    ABSTAIN = "Abstain"


class VotingStrategy(enum.Enum):
    SIMPLE = "Simple"
    SUPERMAJORITY = "Supermajority"
    UNANIMOUS = "Unanimous"


@dataclass
class ParameterChange:
    parameter: str
    old_value: str
    new_value: str


@dataclass
class ContractUpgrade:
    contract_address: str
    new_version: str
    upgrade_data: bytes = b""


@dataclass
class EmergencyAction:
    action_type: str
    action_data: bytes = b""


@dataclass
class ValidatorSetChange:
    validators: list[str] = field(default_factory=list)
    powers: list[int] = field(default_factory=list)


@dataclass
class TreasurySpend:
    recipient: str
    amount: int
    purpose: str


ProposalType = Union[
    ParameterChange, ContractUpgrade, EmergencyAction, ValidatorSetChange, TreasurySpend
]

_PROPOSAL_TYPES: dict[str, type] = {
    cls.__name__: cls
    for cls in (ParameterChange, ContractUpgrade, EmergencyAction, ValidatorSetChange, TreasurySpend)
}
_BYTE_FIELDS = frozenset({"upgrade_data", "action_data"})


def _serialization_error(detail: str) -> GovernanceError:
    return GovernanceError(GovernanceErrorKind.SERIALIZATION_ERROR, detail)


def _proposal_type_to_dict(proposal_type: ProposalType) -> dict[str, Any]:
    body: dict[str, Any] = {}
    for f in fields(proposal_type):
        value = getattr(proposal_type, f.name)
        if isinstance(value, (bytes, bytearray, list)):
            value = list(value)
        body[f.name] = value
    return {type(proposal_type).__name__: body}


def _proposal_type_from_dict(data: Any) -> ProposalType:
    if not isinstance(data, dict) or len(data) != 1:
        raise _serialization_error("proposal type must be an object with one key")
    ((tag, body),) = data.items()
    cls = _PROPOSAL_TYPES.get(tag)
    if cls is None:
        raise _serialization_error(f"unknown proposal type {tag!r}")
    if not isinstance(body, dict):
        raise _serialization_error(f"{tag} body must be an object")
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in body:
            raise _serialization_error(f"{tag} is missing {f.name}")
        value = body[f.name]
        if f.name in _BYTE_FIELDS:
            value = bytes(value)
        elif isinstance(value, list):
            value = list(value)
        kwargs[f.name] = value
    return cls(**kwargs)


@dataclass
class Vote:
    """A vote cast on a proposal, directly or through delegation."""

    voter: str
    proposal_id: str
    vote_type: VoteType
    voting_power: int
    timestamp: int
    reason: str | None = None

    def _to_dict(self) -> dict[str, Any]:
        return {
            "voter": self.voter,
            "proposal_id": self.proposal_id,
            "vote_type": self.vote_type.value,
            "voting_power": self.voting_power,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> Vote:
        return cls(
            voter=data["voter"],
            proposal_id=data["proposal_id"],
            vote_type=VoteType(data["vote_type"]),
            voting_power=int(data["voting_power"]),
            timestamp=int(data["timestamp"]),
            reason=data.get("reason"),
        )


@dataclass
class Proposal:
    """A governance proposal with its votes and thresholds."""

    id: str
    title: str
    description: str
    proposer: str
    proposal_type: ProposalType
    start_time: int
    end_time: int
    status: ProposalStatus = ProposalStatus.ACTIVE
    votes: dict[str, Vote] = field(default_factory=dict)
    required_quorum: int = 0
    required_majority: int = 0
    execution_time: int | None = None
    execution_tx: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """A JSON-ready mapping of the proposal."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "proposer": self.proposer,
            "proposal_type": _proposal_type_to_dict(self.proposal_type),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "status": self.status.value,
            "votes": {voter: vote._to_dict() for voter, vote in self.votes.items()},
            "required_quorum": self.required_quorum,
            "required_majority": self.required_majority,
            "execution_time": self.execution_time,
            "execution_tx": self.execution_tx,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Proposal:
        """Rebuild a proposal; raise GovernanceError on malformed data."""
        if not isinstance(data, dict):
            raise _serialization_error("proposal must be an object")
        try:
            raw_votes = data["votes"]
            if not isinstance(raw_votes, dict):
                raise _serialization_error("votes must be an object")
            return cls(
                id=data["id"],
                title=data["title"],
                description=data["description"],
                proposer=data["proposer"],
                proposal_type=_proposal_type_from_dict(data["proposal_type"]),
                start_time=int(data["start_time"]),
                end_time=int(data["end_time"]),
                status=ProposalStatus(data["status"]),
                votes={voter: Vote._from_dict(vote) for voter, vote in raw_votes.items()},
                required_quorum=int(data["required_quorum"]),
                required_majority=int(data["required_majority"]),
                execution_time=data.get("execution_time"),
                execution_tx=data.get("execution_tx"),
            )
        except KeyError as exc:
            raise _serialization_error(f"missing field {exc.args[0]!r}") from exc
        except (TypeError, ValueError) as exc:
            raise _serialization_error(str(exc)) from exc


@dataclass
class VoteDelegation:
    """A share (1-100 percent) of one address's voting power lent to another."""

    delegator: str
    delegate: str
    percentage: int
    timestamp: int
    is_active: bool = True


@dataclass
class Parameter:
    name: str
    value: str
    description: str
    last_updated: int
    updated_by: str


@dataclass
class ValidatorUpdate:
    address: str
    power: int
    active: bool


@dataclass
class TreasuryBalance:
    total_balance: int = 0
    available_balance: int = 0
    locked_balance: int = 0


@dataclass
class VotingStatistics:
    total_proposals: int = 0
    active_proposals: int = 0
    passed_proposals: int = 0
    failed_proposals: int = 0
    total_votes_cast: int = 0
    average_participation_rate: float = 0.0
    top_voters: list[tuple[str, int]] = field(default_factory=list)


def tally_votes(proposal: Proposal) -> tuple[int, int, int]:
    """(yes power, no power, total power) over all votes; abstentions count in the total."""
    yes = no = total = 0
    for vote in proposal.votes.values():
        total += vote.voting_power
        if vote.vote_type is VoteType.YES:
            yes += vote.voting_power
        elif vote.vote_type is VoteType.NO:
            no += vote.voting_power
    return yes, no, total


def required_deposit(proposal_type: ProposalType, base_deposit: int) -> int:
    """Deposit needed to submit a proposal of this type."""
    if isinstance(proposal_type, EmergencyAction):
        return base_deposit * 5
    if isinstance(proposal_type, ValidatorSetChange):
        return base_deposit * 3
    if isinstance(proposal_type, TreasurySpend):
        base = base_deposit * 2
        return base * 3 if proposal_type.amount > LARGE_TREASURY_SPEND else base
    return base_deposit


def dynamic_requirements(
    proposal_type: ProposalType,
    total_power: int,
    quorum_percentage: int,
    majority_percentage: int,
    strategy: VotingStrategy,
) -> tuple[int, int]:
    """(required quorum, required majority) for a proposal type and voting strategy."""
    base_quorum = total_power * quorum_percentage // 100
    base_majority = total_power * majority_percentage // 100
    if isinstance(proposal_type, EmergencyAction):
        return base_quorum * 150 // 100, base_majority * 120 // 100
    if isinstance(proposal_type, ValidatorSetChange):
        return base_quorum, base_majority * 110 // 100
    if isinstance(proposal_type, TreasurySpend):
        if proposal_type.amount > LARGE_TREASURY_SPEND:
            return base_quorum * 120 // 100, base_majority * 110 // 100
        return base_quorum, base_majority
    if strategy is VotingStrategy.SUPERMAJORITY:
        return base_quorum, base_majority * 120 // 100
    if strategy is VotingStrategy.UNANIMOUS:
        return total_power, total_power
    return base_quorum, base_majority