"""
Formulas for DAO core and proposal module contracts, backed by transformations.
"""

from typing import Any, Optional

from stateindex.core.env import Environment
from stateindex.core.types import Formula


def config(env: Environment, args: dict[str, Any]) -> Optional[dict[str, Any]]:
    match = env.get_transformation_match(env.target_address, "config")
    if match is not None:
        return match.value
    # Contracts indexed before transformations existed
    return env.get(env.target_address, "config_v2") or env.get(env.target_address, "config")


def proposal_modules(env: Environment, args: dict[str, Any]) -> list[dict[str, Any]]:
    modules = env.get_transformation_map(env.target_address, "proposalModule") or {}
    return [modules[address] for address in sorted(modules)]


def proposal_count(env: Environment, args: dict[str, Any]) -> int:
    match = env.get_transformation_match(env.target_address, "proposalCount")
    return match.value if match is not None and match.value is not None else 0


FORMULAS = {
    "daoCore/config": Formula(config, docs="DAO config"),
    "daoCore/proposalModules": Formula(proposal_modules, docs="Proposal modules sorted by address"),
    "daoProposal/proposalCount": Formula(proposal_count, docs="Number of proposals created"),
}
