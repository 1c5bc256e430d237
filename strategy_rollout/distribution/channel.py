"""
Distribution Channel: the external system that ships approved strategies to desktop clients.

Behavioral Contract:
- push() receives an approved StrategyUpdate and either returns a receipt or raises.
- The pipeline treats every push as best-effort: a failed push never undoes
  the approval that triggered it.
- How a percentage maps onto concrete clients is the channel's business.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

import httpx

from strategy_rollout.config import PipelineConfig
from strategy_rollout.errors import DependencyFailure
from strategy_rollout.models.strategy_update import StrategyUpdate

logger = logging.getLogger(__name__)


class DistributionChannel(Protocol):
    """Anything that can ship a strategy artifact to the fleet."""

    def push(self, update: StrategyUpdate) -> dict: ...


def build_strategy_artifact(update: StrategyUpdate) -> dict:
    """The document desktop clients sync for one app/strategy type."""
    return {
        "appId": update.app_id,
        "strategyUpdateId": update.id,
        "strategies": {
            update.strategy_type: {
                "version": update.version,
                "updateType": update.update_type.value,
                "lastUpdated": datetime.now(timezone.utc).isoformat(),
                "source": "ai_learning",
                "schemaVersion": update.payload.schema_version,
                "payload": update.payload.data,
            }
        },
    }


class RecordingDistributionChannel:
    """
    In-process channel. Keeps every pushed artifact so local runs and tests
    can inspect what the fleet would have received.
    """

    def __init__(self, fail_with: Optional[Exception] = None):
        self.fail_with = fail_with
        self.pushed: List[dict] = []
        self._latest: Dict[str, dict] = {}

    def push(self, update: StrategyUpdate) -> dict:
        if self.fail_with is not None:
            raise self.fail_with
        artifact = build_strategy_artifact(update)
        self.pushed.append(artifact)
        self._latest[f"{update.app_id}:{update.strategy_type}"] = artifact
        logger.info(
            "Recorded strategy push for %s (%s v%s)",
            update.app_id, update.strategy_type, update.version,
        )
        return {"status": "recorded", "artifact_count": len(self.pushed)}

    def latest(self, app_id: str, strategy_type: str) -> Optional[dict]:
        return self._latest.get(f"{app_id}:{strategy_type}")


class WebhookDistributionChannel:
    """Posts the artifact to the fleet distribution endpoint."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def push(self, update: StrategyUpdate) -> dict:
        artifact = build_strategy_artifact(update)
        try:
            response = self._client.post(self.url, json=artifact)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DependencyFailure(
                f"distribution push failed for {update.id}: {e}", url=self.url
            ) from e
        logger.info("Pushed strategy %s to %s (%s)", update.id, self.url, response.status_code)
        return {"status": "pushed", "http_status": response.status_code}

    def close(self) -> None:
        self._client.close()


def channel_from_config(config: PipelineConfig) -> DistributionChannel:
    if config.distribution_url:
        return WebhookDistributionChannel(
            config.distribution_url, timeout=config.distribution_timeout_seconds
        )
    return RecordingDistributionChannel()
