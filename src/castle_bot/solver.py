"""
HTTP client for the decision service.

The client is constructed explicitly, owns a single ``httpx.AsyncClient`` and
must be closed at shutdown (or used as an async context manager).
"""

from typing import Optional, Mapping, Dict, Any

import httpx

from castle_bot.config import SolverConfig
from castle_bot.errors import DecisionServiceError
from castle_bot.logging import get_logger
from castle_bot.models import BuildingType, Entity, Recommendation
from castle_bot.resilience import RetryPolicy, SOLVER_RETRY_POLICY, retry

logger = get_logger(__name__)


# End-of-build-order target levels
DEFAULT_TARGETS: Dict[BuildingType, int] = {
    BuildingType.LUMBERJACK: 30,
    BuildingType.QUARRY: 30,
    BuildingType.ORE_MINE: 30,
    BuildingType.FARM: 30,
    BuildingType.WOOD_STORE: 20,
    BuildingType.STONE_STORE: 20,
    BuildingType.ORE_STORE: 20,
    BuildingType.KEEP: 10,
    BuildingType.ARSENAL: 30,
    BuildingType.LIBRARY: 10,
    BuildingType.TAVERN: 10,
    BuildingType.MARKET: 8,
    BuildingType.FORTIFICATIONS: 20,
}


def resolve_targets(overrides: Optional[Mapping[str, int]] = None) -> Dict[BuildingType, int]:
    """Default targets with per-building overrides from config."""
    targets = dict(DEFAULT_TARGETS)
    for key, level in (overrides or {}).items():
        try:
            targets[BuildingType(key.upper())] = int(level)
        except ValueError:
            logger.warning("Ignoring unknown target building", building=key)
    return targets


def _base_url(address: str) -> str:
    if "://" not in address:
        address = f"http://{address}"
    return address.rstrip("/")


class HttpDecisionClient:
    """
    Decision service over HTTP/JSON.

    ``POST /solve`` with ``{"castle": ..., "targets": [...]}``.
    """

    def __init__(
        self,
        config: Optional[SolverConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        """
        Args:
            config: Address and timeout of the service
            client: Preconfigured httpx client (tests inject a MockTransport)
            policy: Retry policy for transport failures
        """
        self.config = config or SolverConfig()
        self.policy = policy or RetryPolicy(
            max_attempts=self.config.max_attempts,
            delay_ms=SOLVER_RETRY_POLICY.delay_ms,
            backoff_multiplier=SOLVER_RETRY_POLICY.backoff_multiplier,
            max_delay_ms=SOLVER_RETRY_POLICY.max_delay_ms,
        )
        self._client = client or httpx.AsyncClient(
            base_url=_base_url(self.config.address),
            timeout=self.config.timeout_seconds,
        )
        self._closed = False

    async def __aenter__(self) -> "HttpDecisionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._client.aclose()

    async def solve(
        self,
        entity: Entity,
        targets: Optional[Mapping[BuildingType, int]] = None,
    ) -> Recommendation:
        """
        Ask for the next actions of one castle.

        Raises:
            DecisionServiceError: Transport failure, HTTP error or bad payload
        """
        if self._closed:
            raise DecisionServiceError("Decision client is closed", entity.name)

        targets = targets if targets is not None else DEFAULT_TARGETS
        payload = {
            "castle": entity.to_request(),
            "targets": [{"type": b.value, "level": level} for b, level in targets.items()],
        }

        async def _post() -> httpx.Response:
            response = await self._client.post("/solve", json=payload)
            response.raise_for_status()
            return response

        outcome = await retry(_post, policy=self.policy, description=f"solve {entity.name}")
        if not outcome.success:
            raise DecisionServiceError(outcome.error or "request failed", entity.name)

        # Payload problems are not retried
        try:
            body = outcome.result.json()
        except ValueError as e:
            raise DecisionServiceError(f"Malformed response: {e}", entity.name)

        if not isinstance(body, dict):
            raise DecisionServiceError("Malformed response: expected an object", entity.name)

        try:
            recommendation = Recommendation.from_response(body)
        except (AttributeError, TypeError) as e:
            raise DecisionServiceError(f"Malformed response: {e}", entity.name)

        logger.debug(
            "Recommendation received",
            castle=entity.name,
            build=recommendation.build_action.building.value if recommendation.build_action else None,
            objective_satisfied=recommendation.objective_satisfied,
        )
        return recommendation
