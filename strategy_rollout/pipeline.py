"""Wiring for the rollout pipeline: one Database handle, every component built on it."""

import logging
from typing import Optional

from strategy_rollout.approval.gate import ApprovalGate
from strategy_rollout.config import PipelineConfig, SchedulerConfig
from strategy_rollout.distribution.channel import DistributionChannel, channel_from_config
from strategy_rollout.ledger.reports import RolloutReports
from strategy_rollout.ledger.store import DeploymentLedger
from strategy_rollout.rollout.controller import RolloutController
from strategy_rollout.rollout.rollback import RollbackManager
from strategy_rollout.rollout.scheduler import MetricsSource, RolloutScheduler
from strategy_rollout.store.database import Database
from strategy_rollout.store.rollout_plans import RolloutPlanStore
from strategy_rollout.store.strategy_updates import StrategyUpdateStore

logger = logging.getLogger(__name__)


class RolloutPipeline:
    """All pipeline components, sharing one Database."""

    def __init__(
        self,
        database: Optional[Database] = None,
        config: Optional[PipelineConfig] = None,
        channel: Optional[DistributionChannel] = None,
        metrics_source: Optional[MetricsSource] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
    ):
        self.config = config or PipelineConfig()
        self.database = database or Database(self.config.database_path)
        self.channel = channel or channel_from_config(self.config)

        self.updates = StrategyUpdateStore(self.database)
        self.plans = RolloutPlanStore(self.database)
        self.ledger = DeploymentLedger(self.database)

        self.gate = ApprovalGate(self.updates, self.plans, self.channel, self.config)
        self.rollbacks = RollbackManager(self.updates, self.plans, self.ledger)
        self.controller = RolloutController(self.updates, self.plans, self.ledger, self.rollbacks)
        self.scheduler = RolloutScheduler(self.controller, metrics_source, scheduler_config)
        self.reports = RolloutReports(self.ledger, self.plans)
        logger.info("Rollout pipeline ready (database=%s)", self.database.path)

    def close(self) -> None:
        self.database.close()
