"""
Component wiring for the ECA server.

EcaEngine holds every long-lived component built on top of one store:
state machine, action table, rules, processor, analytics and the webhook
pipeline. Both the HTTP app and tests build it through build_engine().

Invariants:
    - All components share one store, one state machine and one action table
    - The state machine and action table are frozen before the engine exists
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .analytics import PerformanceAnalyzer, RfmAnalyzer
from .api.webhook import WebhookPipeline
from .apply import ActionProcessor, RuleSet, default_rules
from .config import ServerConfig
from .schema.actions import ActionTable, build_default_action_table
from .schema.actions import validate_against as validate_action_table
from .schema.state_machine import StateMachine, get_state_machine
from .store.base import StoreBackend

logger = logging.getLogger(__name__)


@dataclass
class EcaEngine:
    """Every component of a running server.

    Attributes:
        config: Server configuration
        store: Connected backing store
        degraded: Whether the store is the in-memory fallback
    """

    config: ServerConfig
    store: StoreBackend
    degraded: bool
    state_machine: StateMachine
    action_table: ActionTable
    rules: RuleSet
    processor: ActionProcessor
    rfm: RfmAnalyzer
    performance: PerformanceAnalyzer
    pipeline: WebhookPipeline


def load_rules(config: ServerConfig) -> RuleSet:
    """Rules from ECA_RULES_FILE, or the built-in defaults."""
    if config.engine.rules_file:
        return RuleSet.from_yaml(config.engine.rules_file)
    return RuleSet(default_rules())


def build_engine(
    config: ServerConfig,
    store: StoreBackend,
    degraded: bool = False,
    rules: Optional[RuleSet] = None,
) -> EcaEngine:
    """Wire every component on top of a connected store.

    Raises:
        ValueError: If the action table references unknown statuses
    """
    state_machine = get_state_machine()
    action_table = build_default_action_table()
    errors = validate_action_table(action_table, state_machine)
    if errors:
        raise ValueError("Invalid action table: " + "; ".join(errors))

    rules = rules if rules is not None else load_rules(config)
    processor = ActionProcessor(
        store,
        action_table=action_table,
        state_machine=state_machine,
        rules=rules,
        snapshot_max_attempts=config.engine.snapshot_max_attempts,
    )
    pipeline = WebhookPipeline(
        processor,
        store,
        request_timeout_seconds=config.engine.request_timeout_seconds,
    )

    logger.info(
        "ECA engine ready",
        extra={
            "actions": len(action_table),
            "rules": rules.stats(),
            "state_machine": state_machine.fingerprint,
            "degraded": degraded,
        },
    )
    return EcaEngine(
        config=config,
        store=store,
        degraded=degraded,
        state_machine=state_machine,
        action_table=action_table,
        rules=rules,
        processor=processor,
        rfm=RfmAnalyzer(processor.transactions, processor.entities),
        performance=PerformanceAnalyzer(
            processor.transactions, processor.relationships, processor.entities
        ),
        pipeline=pipeline,
    )
