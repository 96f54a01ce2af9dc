"""
Transformers for DAO core contracts.
"""

from typing import Any

from stateindex.core.keys import decode_keys
from stateindex.core.types import WasmStateEvent
from stateindex.transformers.types import GetLastValue
from stateindex.transformers.utils import make_transformer, make_transformer_for_map

CODE_IDS_KEYS = ["dao-core"]


def _proposal_module_value(event: WasmStateEvent, get_last_value: GetLastValue) -> Any:
    namespace, address = decode_keys(event.key, [False, False])
    # V1 modules have no prefix and are always enabled
    if namespace == "proposal_modules":
        return {"address": address, "prefix": "", "status": "Enabled"}
    return event.value_json


config = make_transformer(CODE_IDS_KEYS, "config", ["config", "config_v2"])
paused = make_transformer(CODE_IDS_KEYS, "paused")
admin = make_transformer(CODE_IDS_KEYS, "admin")
nominated_admin = make_transformer(CODE_IDS_KEYS, "nominatedAdmin", "nominated_admin")
voting_module = make_transformer(CODE_IDS_KEYS, "votingModule", "voting_module")
active_proposal_module_count = make_transformer(
    CODE_IDS_KEYS, "activeProposalModuleCount", "active_proposal_module_count"
)
total_proposal_module_count = make_transformer(
    CODE_IDS_KEYS, "totalProposalModuleCount", "total_proposal_module_count"
)

proposal_modules = make_transformer_for_map(
    CODE_IDS_KEYS,
    "proposalModule",
    ["proposal_modules", "proposal_modules_v2"],
    get_value=_proposal_module_value
)
sub_daos = make_transformer_for_map(CODE_IDS_KEYS, "subDao", "sub_daos")
items = make_transformer_for_map(CODE_IDS_KEYS, "item", "items")
cw20s = make_transformer_for_map(CODE_IDS_KEYS, "cw20", "cw20s")
cw721s = make_transformer_for_map(CODE_IDS_KEYS, "cw721", "cw721s")

TRANSFORMERS = [
    config,
    paused,
    admin,
    nominated_admin,
    voting_module,
    active_proposal_module_count,
    total_proposal_module_count,
    proposal_modules,
    sub_daos,
    items,
    cw20s,
    cw721s,
]
