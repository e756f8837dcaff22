"""Delegate governance: roster, quorum ballots and the expiry reaper."""

from civicrepair.governance.reaper import BallotReaper
from civicrepair.governance.roster import DelegateRoster
from civicrepair.governance.voting import QuorumVotingEngine, WinnerExecutor

__all__ = ["BallotReaper", "DelegateRoster", "QuorumVotingEngine", "WinnerExecutor"]
