"""
Transformers for DAO proposal modules.

Proposals live in the "proposals" (or "proposals_v2") map keyed by a numeric
id, ballots in the "ballots" map keyed by (proposal id, voter).
"""

from typing import Any, Optional

from stateindex.core.keys import decode_keys, encode_map_prefix
from stateindex.core.types import WasmStateEvent
from stateindex.transformers.types import GetLastValue, Transformer, TransformerFilter

CODE_IDS_KEYS = ["dao-proposal-single", "dao-proposal-multiple"]

STATUS_OPEN = "open"

KEY_PREFIX_PROPOSALS = encode_map_prefix("proposals")
KEY_PREFIX_PROPOSALS_V2 = encode_map_prefix("proposals_v2")
KEY_PREFIX_BALLOTS = encode_map_prefix("ballots")


def _is_proposal_event(event: WasmStateEvent) -> bool:
    return event.key.startswith(KEY_PREFIX_PROPOSALS) or event.key.startswith(KEY_PREFIX_PROPOSALS_V2)


def _proposal_id(event: WasmStateEvent) -> int:
    return decode_keys(event.key, [False, True])[1]


def _proposed_name(event: WasmStateEvent) -> Optional[str]:
    # Deletes carry no proposer
    value = event.value_json
    if event.delete or not isinstance(value, dict) or not value.get("proposer"):
        return None
    return f"proposed:{value['proposer']}:{_proposal_id(event)}"


def _proposed_matches(event: WasmStateEvent) -> bool:
    value = event.value_json
    return (
        _is_proposal_event(event)
        and isinstance(value, dict)
        and bool(value.get("proposer"))
        and value.get("status") == STATUS_OPEN
    )


def _vote_cast_value(event: WasmStateEvent, get_last_value: GetLastValue) -> dict[str, Any]:
    _, proposal_id, voter = decode_keys(event.key, [False, True, False])
    return {
        "proposalId": proposal_id,
        "voter": voter,
        "vote": event.value_json,
        "votedAt": event.block.timestamp.isoformat()
    }


def _vote_cast_name(event: WasmStateEvent) -> str:
    _, proposal_id, voter = decode_keys(event.key, [False, True, False])
    return f"voteCast:{voter}:{proposal_id}"


def _proposal_count_value(event: WasmStateEvent, get_last_value: GetLastValue) -> int:
    # Highest proposal id seen so far; ids are assigned sequentially from 1
    return max(get_last_value() or 0, _proposal_id(event))


proposal = Transformer(
    filter=TransformerFilter(code_ids_keys=CODE_IDS_KEYS, matches=_is_proposal_event),
    name=lambda event: f"proposal:{_proposal_id(event)}",
    get_value=lambda event, get_last_value: event.value_json
)

proposed = Transformer(
    filter=TransformerFilter(code_ids_keys=CODE_IDS_KEYS, matches=_proposed_matches),
    name=_proposed_name,
    get_value=lambda event, get_last_value: {"proposalId": _proposal_id(event)}
)

vote_cast = Transformer(
    filter=TransformerFilter(code_ids_keys=CODE_IDS_KEYS, matches=lambda event: event.key.startswith(KEY_PREFIX_BALLOTS)),
    name=_vote_cast_name,
    get_value=_vote_cast_value
)

proposal_count = Transformer(
    filter=TransformerFilter(
        code_ids_keys=CODE_IDS_KEYS,
        matches=lambda event: _is_proposal_event(event) and not event.delete
    ),
    name="proposalCount",
    get_value=_proposal_count_value
)

TRANSFORMERS = [proposal, proposed, vote_cast, proposal_count]
