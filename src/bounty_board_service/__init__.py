"""Bounty board service: escrow-funded bounties on GitHub issues."""

__version__ = "0.1.0"
