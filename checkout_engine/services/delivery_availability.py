"""
Delivery Feasibility Gate

Asks the delivery availability service whether couriers can take a delivery
before the payment session is created.

Asymmetric failure policy:
- Explicit {"isAvailable": false}: checkout is rejected (DeliveryUnavailableError,
  raised by the orchestrator)
- Service unreachable, erroring or answering garbage: feasibility is unknown,
  checkout proceeds and the session metadata records deliveryCheckFailed
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from checkout_engine.core.exceptions import DeliveryAvailabilityError
from checkout_engine.core.http_client import ResilientHTTPClient, RetryConfig
from checkout_engine.services.distance import Coordinates

logger = logging.getLogger(__name__)


@dataclass
class FeasibilityResult:
    available: bool
    available_courier_count: Optional[int] = None
    estimated_minutes: Optional[int] = None
    checked: bool = True

    @classmethod
    def unknown(cls) -> "FeasibilityResult":
        return cls(available=True, checked=False)

    def to_metadata(self) -> Dict[str, str]:
        if not self.checked:
            return {"deliveryCheckFailed": "true"}
        data = {"deliveryAvailable": "true" if self.available else "false"}
        if self.available_courier_count is not None:
            data["availableDeliverers"] = str(self.available_courier_count)
        if self.estimated_minutes is not None:
            data["estimatedDeliveryTime"] = str(self.estimated_minutes)
        return data


def _optional_int(value) -> Optional[int]:
    if value is None:
        return None
    return int(value)


class DeliveryAvailabilityClient:
    """
    HTTP client for the delivery availability service.

    POST {lat, lng, deliveryDate, deliveryTime}
      -> {isAvailable, availableCount, estimatedDeliveryTime}
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        http_client: Optional[ResilientHTTPClient] = None,
    ):
        self.url = url
        self._client = http_client or ResilientHTTPClient(
            retry_config=RetryConfig(max_retries=1),
            timeout=timeout,
            default_headers={"Accept": "application/json"},
        )

    async def check(
        self,
        coordinates: Coordinates,
        delivery_date: Optional[str] = None,
        delivery_time: Optional[str] = None,
    ) -> FeasibilityResult:
        """
        Raises:
            DeliveryAvailabilityError: service unreachable or response unusable
        """
        payload = {
            "lat": coordinates.lat,
            "lng": coordinates.lng,
            "deliveryDate": delivery_date,
            "deliveryTime": delivery_time,
        }

        try:
            response = await self._client.post(self.url, json=payload)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DeliveryAvailabilityError(
                f"Delivery availability check failed: {type(e).__name__}",
                details={"url": self.url},
            ) from e

        if not isinstance(data, dict) or not isinstance(data.get("isAvailable"), bool):
            raise DeliveryAvailabilityError(
                "Delivery availability response missing isAvailable",
                details={"url": self.url},
            )

        try:
            return FeasibilityResult(
                available=data["isAvailable"],
                available_courier_count=_optional_int(data.get("availableCount")),
                estimated_minutes=_optional_int(data.get("estimatedDeliveryTime")),
            )
        except (TypeError, ValueError) as e:
            raise DeliveryAvailabilityError(
                "Delivery availability response has invalid counts",
                details={"url": self.url},
            ) from e

    async def close(self) -> None:
        await self._client.close()


class DeliveryFeasibilityGate:
    """Turns availability lookups into a never-raising feasibility verdict."""

    def __init__(self, availability_client: DeliveryAvailabilityClient):
        self.availability_client = availability_client

    async def check_feasible(
        self,
        buyer_coordinates: Coordinates,
        requested_date: Optional[str] = None,
        requested_time: Optional[str] = None,
    ) -> FeasibilityResult:
        try:
            result = await self.availability_client.check(buyer_coordinates, requested_date, requested_time)
        except DeliveryAvailabilityError as e:
            logger.warning(f"Delivery feasibility unknown, proceeding with checkout: {e.message}")
            return FeasibilityResult.unknown()

        if not result.available:
            logger.info(
                f"No delivery capacity at ({buyer_coordinates.lat}, {buyer_coordinates.lng}) "
                f"for {requested_date} {requested_time}"
            )
        return result
