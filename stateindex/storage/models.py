"""
SQLAlchemy Models for StateIndex Storage.

This module defines the database schema for the indexer: contracts, raw
contract storage events, derived transformations, memoized computations with
their dependencies, and the chain cursor.
"""

import time
from sqlalchemy import (
    BigInteger, Boolean, Column, Float, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
PrimaryKeyInt = BigInteger().with_variant(Integer, "sqlite")


class ContractModel(Base):
    """
    Represents a contract and the code id it was instantiated from.
    """
    __tablename__ = 'contracts'

    address = Column(String(255), primary_key=True)
    code_id = Column(Integer, nullable=True, index=True)
    admin = Column(String(255), nullable=True)
    creator = Column(String(255), nullable=True)
    label = Column(Text, nullable=True)
    updated_at = Column(Float, default=time.time)

    def __repr__(self):
        return f"<Contract(address='{self.address}', code_id={self.code_id})>"


class StateModel(Base):
    """
    Singleton chain cursor: the latest ingested block.
    """
    __tablename__ = 'state'

    singleton = Column(Boolean, primary_key=True, default=True)
    chain_id = Column(String(64), nullable=False)
    latest_block_height = Column(BigInteger, nullable=False, default=0)
    latest_block_time_unix_ms = Column(BigInteger, nullable=False, default=0)

    def __repr__(self):
        return f"<State(chain_id='{self.chain_id}', height={self.latest_block_height})>"


class WasmStateEventModel(Base):
    """
    Represents a single contract storage mutation.

    Keys are comma-separated byte values so map entries can be selected with
    a textual prefix match.
    """
    __tablename__ = 'wasm_state_events'
    __table_args__ = (
        Index('ix_wasm_state_events_contract_key_height', 'contract_address', 'key', 'block_height'),
        Index('ix_wasm_state_events_height', 'block_height'),
    )

    contract_address = Column(String(255), primary_key=True)
    key = Column(Text, primary_key=True)
    block_height = Column(BigInteger, primary_key=True)
    block_time_unix_ms = Column(BigInteger, nullable=False)
    value = Column(Text, nullable=True)  # Raw JSON text
    delete = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<WasmStateEvent(contract='{self.contract_address}', key='{self.key}', height={self.block_height})>"


class WasmStateEventTransformationModel(Base):
    """
    Represents a named fact derived from contract storage events.
    """
    __tablename__ = 'wasm_state_event_transformations'
    __table_args__ = (
        UniqueConstraint('contract_address', 'name', 'block_height', name='uq_transformation_identity'),
        Index('ix_transformations_name_height', 'name', 'block_height'),
        Index('ix_transformations_height', 'block_height'),
    )

    id = Column(PrimaryKeyInt, primary_key=True, autoincrement=True)
    contract_address = Column(String(255), nullable=False)
    block_height = Column(BigInteger, nullable=False)
    block_time_unix_ms = Column(BigInteger, nullable=False)
    name = Column(Text, nullable=False)
    value = Column(JSON(none_as_null=True), nullable=True)

    def __repr__(self):
        return f"<Transformation(contract='{self.contract_address}', name='{self.name}', height={self.block_height})>"


class ComputationModel(Base):
    """
    Represents a memoized formula output and its block-height validity window.
    """
    __tablename__ = 'computations'
    __table_args__ = (
        UniqueConstraint('target_address', 'formula', 'args', 'block_height', name='uq_computation_identity'),
        Index('ix_computations_lookup', 'target_address', 'formula', 'args', 'block_height'),
    )

    id = Column(PrimaryKeyInt, primary_key=True, autoincrement=True)
    target_address = Column(String(255), nullable=False)
    formula = Column(String(255), nullable=False)
    args = Column(Text, nullable=False)  # Canonical JSON text
    block_height = Column(BigInteger, nullable=False)
    block_time_unix_ms = Column(BigInteger, nullable=False, default=0)
    latest_block_height_valid = Column(BigInteger, nullable=False)
    validity_extendable = Column(Boolean, nullable=False, default=True)
    output = Column(JSON(none_as_null=True), nullable=True)

    dependencies = relationship(
        "ComputationDependencyModel",
        back_populates="computation",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    def __repr__(self):
        return f"<Computation(formula='{self.formula}', target='{self.target_address}', height={self.block_height})>"


class ComputationDependencyModel(Base):
    """
    Represents one dependent key recorded for a computation.
    """
    __tablename__ = 'computation_dependencies'
    __table_args__ = (
        UniqueConstraint('computation_id', 'key', 'prefix', name='uq_computation_dependency'),
        Index('ix_computation_dependencies_key', 'key'),
    )

    id = Column(PrimaryKeyInt, primary_key=True, autoincrement=True)
    computation_id = Column(PrimaryKeyInt, ForeignKey('computations.id', ondelete='CASCADE'), nullable=False)
    key = Column(Text, nullable=False)
    prefix = Column(Boolean, nullable=False, default=False)
    # Exact keys are matched in SQL; wildcard and prefix keys are re-checked in Python
    exact = Column(Boolean, nullable=False, default=True, index=True)
    # Pre-filter columns for non-exact keys; NULL matches any namespace or contract
    namespace = Column(String(64), nullable=True, index=True)
    contract_address = Column(String(255), nullable=True, index=True)

    computation = relationship("ComputationModel", back_populates="dependencies")

    def __repr__(self):
        return f"<ComputationDependency(key='{self.key}', prefix={self.prefix})>"
