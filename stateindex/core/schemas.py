"""
Pydantic schemas for ingestion input and query output

This module defines the data models used for validating raw state events
submitted to the indexer and for serializing batch and evaluation results.
"""

import json
from typing import Any
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stateindex.core.keys import KeyCodecError, base64_key_to_event_key, event_key_to_bytes


class RawStateEvent(BaseModel):
    """Schema for one contract storage mutation submitted for ingestion"""
    model_config = ConfigDict(
        json_schema_extra = {
            "example": {
                "contract_address": "juno1contract",
                "block_height": 100,
                "block_time_unix_ms": 1700000000000,
                "key": "0,6,99,111,110,102,105,103",
                "value": "{\"name\": \"DAO\"}",
                "delete": False,
                "code_id": 1
            }
        }
    )

    contract_address: str = Field(..., min_length=1, description="Address of the contract whose storage changed")
    block_height: int = Field(..., ge=0, description="Height of the block containing the change")
    block_time_unix_ms: int = Field(..., ge=0, description="Block time in unix milliseconds")
    key: str | None = Field(None, description="Storage key as comma-separated byte values")
    key_base64: str | None = Field(None, description="Storage key as base64, alternative to key")
    value: str | None = Field(None, description="Raw JSON text of the new value")
    delete: bool = Field(False, description="Whether the key was removed at this height")
    code_id: int | None = Field(None, ge=0, description="Code id the contract was instantiated from")

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                event_key_to_bytes(v)
            except KeyCodecError as e:
                raise ValueError(str(e)) from e
        return v

    @model_validator(mode="after")
    def resolve_key(self) -> "RawStateEvent":
        if self.key is None:
            if self.key_base64 is None:
                raise ValueError("Either key or key_base64 is required")
            try:
                self.key = base64_key_to_event_key(self.key_base64)
            except KeyCodecError as e:
                raise ValueError(str(e)) from e
        if not self.delete and self.value is not None:
            try:
                json.loads(self.value)
            except ValueError as e:
                raise ValueError(f"Value is not valid JSON: {e}") from e
        return self


class BatchResult(BaseModel):
    """Summary of one ingestion batch"""
    new_event_count: int = Field(0, description="Events written (new or corrected)")
    new_transformation_count: int = Field(0, description="Transformations written")
    computations_invalidated: int = Field(0, description="Computations whose validity was re-checked")
    computations_destroyed: int = Field(0, description="Computations deleted outright")


class EvaluationResult(BaseModel):
    """Formula value as of one block"""
    value: Any = Field(None, description="Formula output")
    block_height: int = Field(..., description="Latest block height the value depends on, -1 for none")
    block_time_unix_ms: int = Field(0, description="Time of that block in unix milliseconds")


class RangeEntry(BaseModel):
    """One distinct value in a formula's history"""
    value: Any = Field(None, description="Formula output")
    block_height: int = Field(..., description="Block height from which the value holds")
    block_time_unix_ms: int = Field(0, description="Time of that block in unix milliseconds")
