"""Governance manager: proposals, voting, delegation and proposal execution."""

from __future__ import annotations

import copy
import dataclasses
import json
import logging
import secrets
import time
from collections.abc import Iterable, MutableMapping
from datetime import timedelta
from typing import Callable, Protocol

from Crypto.Hash import keccak

from .proposals import (
    ContractUpgrade,
    EmergencyAction,
    GovernanceError,
    GovernanceErrorKind,
    Parameter,
    ParameterChange,
    Proposal,
    ProposalStatus,
    ProposalType,
    TreasuryBalance,
    TreasurySpend,
    ValidatorSetChange,
    Vote,
    VoteDelegation,
    VoteType,
    VotingStrategy,
    dynamic_requirements,
    required_deposit,
    tally_votes,
)

_log = logging.getLogger(__name__)

TREASURY_ADDRESS = "0x0000000000000000000000000000000000000001"
EMERGENCY_ACTIONS = frozenset({"pause_chain", "emergency_upgrade", "validator_slash"})

DEFAULT_PARAMETERS = (
    ("block_time", "3", "Target block time in seconds"),
    ("gas_limit", "30000000", "Maximum gas per block"),
    ("min_stake", "1000000", "Minimum stake for validators"),
    ("max_validators", "100", "Maximum number of validators"),
    ("reward_rate", "5", "Annual reward rate percentage"),
    ("slashing_rate", "10", "Slashing rate percentage"),
    ("unbonding_period", "604800", "Unbonding period in seconds (7 days)"),
    ("proposal_deposit", "10000", "Minimum deposit for proposals"),
)


def _keccak_digest(*parts: bytes) -> bytes:
    hasher = keccak.new(digest_bits=256)
    for part in parts:
        hasher.update(part)
    return hasher.digest()


def _keccak_hex(*parts: bytes) -> str:
    return "0x" + _keccak_digest(*parts).hex()


def _error(kind: GovernanceErrorKind, detail: str | None = None) -> GovernanceError:
    return GovernanceError(kind, detail)


class KeyValueStore(Protocol):
    def put(self, key: bytes, value: bytes) -> None: ...

    def get(self, key: bytes) -> bytes | None: ...


class MemoryStore:
    """A simple in-memory key/value store."""

    def __init__(self) -> None:
        self._data: dict[bytes, bytes] = {}

    def put(self, key: bytes, value: bytes) -> None:
        self._data[bytes(key)] = bytes(value)

    def get(self, key: bytes) -> bytes | None:
        return self._data.get(bytes(key))


def _vote_record(vote: Vote) -> dict[str, object]:
    return {
        "voter": vote.voter,
        "proposal_id": vote.proposal_id,
        "vote_type": vote.vote_type.value,
        "voting_power": vote.voting_power,
        "timestamp": vote.timestamp,
        "reason": vote.reason,
    }


class GovernanceManager:
    """Runs on-chain governance over account balances and a validator set.

    ``balances`` maps addresses to balances and ``validators`` lists validator
    addresses; both are read each time voting power or the treasury is refreshed.
    """

    def __init__(
        self,
        balances: MutableMapping[str, int] | None = None,
        validators: Iterable[str] | None = None,
        store: KeyValueStore | None = None,
        *,
        min_proposal_duration: timedelta = timedelta(hours=1),
        max_proposal_duration: timedelta = timedelta(days=30),
        min_voting_power: int = 0,
        quorum_percentage: int = 40,
        majority_percentage: int = 50,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.balances: MutableMapping[str, int] = balances if balances is not None else {}
        self.validators: list[str] = list(validators) if validators is not None else []
        self.store: KeyValueStore = store if store is not None else MemoryStore()
        self.min_proposal_duration = min_proposal_duration
        self.max_proposal_duration = max_proposal_duration
        self.min_voting_power = min_voting_power
        self.quorum_percentage = quorum_percentage
        self.majority_percentage = majority_percentage
        self._clock = clock or time.time
        self._proposals: dict[str, Proposal] = {}
        self._parameters: dict[str, Parameter] = {}
        self._votes: dict[str, Vote] = {}
        self._voting_power: dict[str, int] = {}
        self._delegations: dict[str, VoteDelegation] = {}
        self._treasury = TreasuryBalance()
        self._total_voting_power = 0

    def _now(self) -> int:
        return int(self._clock())

    # -- setup -----------------------------------------------------------

    def initialize(self) -> None:
        """Install default parameters and load voting power and treasury balance."""
        now = self._now()
        for name, value, description in DEFAULT_PARAMETERS:
            self._parameters[name] = Parameter(
                name=name, value=value, description=description,
                last_updated=now, updated_by="system",
            )
        self.refresh_voting_power()
        self._refresh_treasury()

    def refresh_voting_power(self) -> None:
        """Recompute every validator's voting power from its balance."""
        self._voting_power.clear()
        self._total_voting_power = 0
        for address in self.validators:
            balance = self.balances.get(address)
            if balance is None:
                continue
            self._voting_power[address] = balance
            self._total_voting_power += balance

    def _refresh_treasury(self) -> None:
        balance = self.balances.get(TREASURY_ADDRESS)
        if balance is not None:
            self._treasury.total_balance = balance
            self._treasury.available_balance = balance
            self._treasury.locked_balance = 0

    def voting_power(self, address: str) -> int:
        """Own voting power of ``address``, excluding delegations."""
        return self._voting_power.get(address, 0)

    # -- proposals ---------------------------------------------------------

    def _check_duration(self, duration: timedelta) -> None:
        if not self.min_proposal_duration <= duration <= self.max_proposal_duration:
            raise _error(GovernanceErrorKind.INVALID_DURATION)

    def _base_deposit(self) -> int:
        try:
            return int(self.parameter("proposal_deposit").value)
        except ValueError as exc:
            raise _error(GovernanceErrorKind.INVALID_PARAMETER, str(exc)) from exc

    def _check_balance(self, proposer: str, deposit: int) -> None:
        balance = self.balances.get(proposer)
        if balance is None:
            raise _error(GovernanceErrorKind.INVALID_ADDRESS, proposer)
        if balance < deposit:
            raise _error(GovernanceErrorKind.INSUFFICIENT_BALANCE)

    def _proposal_id(self, title: str, proposer: str) -> str:
        digest = _keccak_digest(
            title.encode(), proposer.encode(), str(self._now()).encode()
        )
        return "0x" + digest[:8].hex()

    def _store(self, proposal: Proposal) -> None:
        self._proposals[proposal.id] = proposal
        self._save_proposal(proposal)

    def create_proposal(
        self,
        title: str,
        description: str,
        proposer: str,
        proposal_type: ProposalType,
        duration: timedelta,
    ) -> Proposal:
        """Open a proposal with the standard quorum and majority."""
        self._check_duration(duration)
        if self.voting_power(proposer) < self.min_voting_power:
            raise _error(GovernanceErrorKind.INSUFFICIENT_VOTING_POWER)
        self._check_balance(proposer, self._base_deposit())

        now = self._now()
        total = self._total_voting_power
        proposal = Proposal(
            id=self._proposal_id(title, proposer),
            title=title,
            description=description,
            proposer=proposer,
            proposal_type=proposal_type,
            start_time=now,
            end_time=now + int(duration.total_seconds()),
            required_quorum=total * self.quorum_percentage // 100,
            required_majority=total * self.majority_percentage // 100,
        )
        self._store(proposal)
        return copy.deepcopy(proposal)

    def create_advanced_proposal(
        self,
        title: str,
        description: str,
        proposer: str,
        proposal_type: ProposalType,
        duration: timedelta,
        voting_strategy: VotingStrategy = VotingStrategy.SIMPLE,
        execution_delay: timedelta | None = None,
    ) -> Proposal:
        """Open a proposal whose deposit and thresholds depend on its type and strategy."""
        self._check_duration(duration)
        if self.voting_power(proposer) < self.min_voting_power:
            raise _error(GovernanceErrorKind.INSUFFICIENT_VOTING_POWER)
        self._check_balance(proposer, required_deposit(proposal_type, self._base_deposit()))

        now = self._now()
        quorum, majority = dynamic_requirements(
            proposal_type,
            self._total_voting_power,
            self.quorum_percentage,
            self.majority_percentage,
            voting_strategy,
        )
        end_time = now + int(duration.total_seconds())
        proposal = Proposal(
            id=self._proposal_id(title, proposer),
            title=title,
            description=description,
            proposer=proposer,
            proposal_type=proposal_type,
            start_time=now,
            end_time=end_time,
            required_quorum=quorum,
            required_majority=majority,
            execution_time=(
                end_time + int(execution_delay.total_seconds())
                if execution_delay is not None
                else None
            ),
        )
        self._store(proposal)
        _log.info("Notifying about proposal creation: %s", proposal.title)
        return copy.deepcopy(proposal)

    # -- voting ------------------------------------------------------------

    def _delegated_power(self, delegate: str) -> int:
        return sum(
            self.voting_power(d.delegator) * d.percentage // 100
            for d in self._delegations.values()
            if d.delegate == delegate and d.is_active
        )

    def cast_vote(
        self,
        proposal_id: str,
        voter: str,
        vote_type: VoteType,
        reason: str | None = None,
    ) -> Vote:
        """Vote on an active proposal, also casting votes delegated to ``voter``."""
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise _error(GovernanceErrorKind.PROPOSAL_NOT_FOUND)
        if proposal.status is not ProposalStatus.ACTIVE:
            raise _error(GovernanceErrorKind.PROPOSAL_NOT_ACTIVE)
        now = self._now()
        if not proposal.start_time <= now <= proposal.end_time:
            raise _error(GovernanceErrorKind.VOTING_PERIOD_ENDED)
        if voter in proposal.votes:
            raise _error(GovernanceErrorKind.ALREADY_VOTED)

        power = self.voting_power(voter) + self._delegated_power(voter)
        if power == 0:
            raise _error(GovernanceErrorKind.NO_VOTING_POWER)

        vote = Vote(
            voter=voter, proposal_id=proposal_id, vote_type=vote_type,
            voting_power=power, timestamp=now, reason=reason,
        )
        for delegation in self._delegations.values():
            if (
                delegation.delegate == voter
                and delegation.is_active
                and delegation.delegator not in proposal.votes
            ):
                proposal.votes[delegation.delegator] = Vote(
                    voter=delegation.delegator,
                    proposal_id=proposal.id,
                    vote_type=vote_type,
                    voting_power=self.voting_power(delegation.delegator)
                    * delegation.percentage // 100,
                    timestamp=now,
                    reason=f"Delegated vote via {voter}",
                )

        proposal.votes[voter] = vote
        self._votes[f"{proposal_id}:{voter}"] = vote
        self._save_vote(vote)
        _log.info("Vote from %s recorded for proposal %s", voter, proposal_id)
        self._settle(proposal)
        return dataclasses.replace(vote)

    def _settle(self, proposal: Proposal) -> None:
        """Decide an active proposal once its voting period is over."""
        if self._now() <= proposal.end_time:
            return
        yes, _no, total = tally_votes(proposal)
        if total >= proposal.required_quorum and yes >= proposal.required_majority:
            proposal.status = ProposalStatus.PASSED
        else:
            proposal.status = ProposalStatus.FAILED

    # -- delegation --------------------------------------------------------

    def delegate_voting_power(self, delegator: str, delegate: str, percentage: int) -> None:
        """Lend ``percentage`` (1-100) of the delegator's voting power to ``delegate``."""
        if not 1 <= percentage <= 100:
            raise _error(GovernanceErrorKind.INVALID_PARAMETER)
        if delegator == delegate:
            raise _error(GovernanceErrorKind.SELF_DELEGATION)
        self._delegations[f"{delegator}:{delegate}"] = VoteDelegation(
            delegator=delegator, delegate=delegate, percentage=percentage,
            timestamp=self._now(), is_active=True,
        )
        _log.info("Delegation created: %s -> %s (%d%%)", delegator, delegate, percentage)

    def revoke_delegation(self, delegator: str, delegate: str) -> None:
        delegation = self._delegations.get(f"{delegator}:{delegate}")
        if delegation is None:
            raise _error(GovernanceErrorKind.DELEGATION_NOT_FOUND)
        delegation.is_active = False
        _log.info("Delegation revoked: %s -> %s", delegator, delegate)

    # -- execution ---------------------------------------------------------

    def execute_proposal(self, proposal_id: str, executor: str) -> Proposal:
        """Carry out a passed proposal and mark it executed."""
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise _error(GovernanceErrorKind.PROPOSAL_NOT_FOUND)
        if proposal.status is ProposalStatus.ACTIVE:
            self._settle(proposal)
        if proposal.status is not ProposalStatus.PASSED:
            raise _error(GovernanceErrorKind.PROPOSAL_NOT_PASSED)
        if self.voting_power(executor) < self.min_voting_power:
            raise _error(GovernanceErrorKind.INSUFFICIENT_VOTING_POWER)

        tx_hash = self._apply(proposal.proposal_type, executor)
        proposal.status = ProposalStatus.EXECUTED
        proposal.execution_time = self._now()
        proposal.execution_tx = tx_hash
        self._save_proposal(proposal)
        return copy.deepcopy(proposal)

    def _apply(self, proposal_type: ProposalType, executor: str) -> str:
        stamp = str(self._now()).encode()
        if isinstance(proposal_type, ParameterChange):
            self._update_parameter(proposal_type.parameter, proposal_type.new_value, executor)
            return _keccak_hex(secrets.token_bytes(32), stamp)
        if isinstance(proposal_type, ContractUpgrade):
            data = f"upgrade:{proposal_type.contract_address}:{proposal_type.new_version}"
            return _keccak_hex(data.encode(), bytes(proposal_type.upgrade_data), stamp)
        if isinstance(proposal_type, EmergencyAction):
            if proposal_type.action_type not in EMERGENCY_ACTIONS:
                raise _error(GovernanceErrorKind.INVALID_ACTION)
            _log.warning("Emergency action executed: %s", proposal_type.action_type)
            data = f"emergency:{proposal_type.action_type}:{bytes(proposal_type.action_data).hex()}"
            return _keccak_hex(data.encode(), stamp)
        if isinstance(proposal_type, ValidatorSetChange):
            if len(proposal_type.validators) != len(proposal_type.powers):
                raise _error(GovernanceErrorKind.INVALID_PARAMETER)
            for validator, power in zip(proposal_type.validators, proposal_type.powers):
                _log.info("Updating validator %s with power %d", validator, power)
            self.refresh_voting_power()
            data = f"validator_set_update:{len(proposal_type.validators)}"
            return _keccak_hex(data.encode(), stamp)
        if isinstance(proposal_type, TreasurySpend):
            if self._treasury.available_balance < proposal_type.amount:
                raise _error(GovernanceErrorKind.INSUFFICIENT_BALANCE)
            self._treasury.available_balance -= proposal_type.amount
            _log.info(
                "Treasury spend: %d to %s for %s",
                proposal_type.amount, proposal_type.recipient, proposal_type.purpose,
            )
            data = (
                f"treasury_spend:{proposal_type.recipient}:"
                f"{proposal_type.amount}:{proposal_type.purpose}"
            )
            return _keccak_hex(data.encode(), stamp)
        raise _error(GovernanceErrorKind.INVALID_PROPOSAL_TYPE)

    def _update_parameter(self, name: str, value: str, updated_by: str) -> None:
        parameter = self._parameters.setdefault(
            name,
            Parameter(name=name, value=value, description="", last_updated=0, updated_by=""),
        )
        parameter.value = value
        parameter.last_updated = self._now()
        parameter.updated_by = updated_by

    # -- queries -----------------------------------------------------------

    def proposal_info(self, proposal_id: str) -> Proposal:
        """A copy of the proposal, loaded from the store if not held in memory."""
        proposal = self._proposals.get(proposal_id)
        if proposal is not None:
            return copy.deepcopy(proposal)
        return self._load_proposal(proposal_id)

    def parameter(self, name: str) -> Parameter:
        parameter = self._parameters.get(name)
        if parameter is None:
            raise _error(GovernanceErrorKind.PARAMETER_NOT_FOUND, name)
        return dataclasses.replace(parameter)

    def all_proposals(self) -> list[Proposal]:
        return [copy.deepcopy(p) for p in self._proposals.values()]

    def treasury_balance(self) -> TreasuryBalance:
        """The treasury balance, refreshed from the treasury account."""
        self._refresh_treasury()
        return dataclasses.replace(self._treasury)

    # -- persistence -------------------------------------------------------

    def _put(self, key: str, record: dict[str, object]) -> None:
        try:
            value = json.dumps(record).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise _error(GovernanceErrorKind.SERIALIZATION_ERROR, str(exc)) from exc
        try:
            self.store.put(key.encode("utf-8"), value)
        except Exception as exc:
            raise _error(GovernanceErrorKind.DATABASE_ERROR, str(exc)) from exc

    def _save_proposal(self, proposal: Proposal) -> None:
        self._put(f"governance:proposal:{proposal.id}", proposal.to_dict())

    def _save_vote(self, vote: Vote) -> None:
        self._put(f"governance:vote:{vote.proposal_id}:{vote.voter}", _vote_record(vote))

    def _load_proposal(self, proposal_id: str) -> Proposal:
        key = f"governance:proposal:{proposal_id}".encode("utf-8")
        try:
            value = self.store.get(key)
        except Exception as exc:
            raise _error(GovernanceErrorKind.DATABASE_ERROR, str(exc)) from exc
        if value is None:
            raise _error(GovernanceErrorKind.PROPOSAL_NOT_FOUND)
        try:
            data = json.loads(value)
        except (ValueError, UnicodeDecodeError) as exc:
            raise _error(GovernanceErrorKind.SERIALIZATION_ERROR, str(exc)) from exc
        return Proposal.from_dict(data)