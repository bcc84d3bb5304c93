"""
Delivery quotes: driving distance from the factory to the buyer, priced per mile.

Distance providers (first configured wins):
- Google Distance Matrix (GOOGLE_MAPS_API_KEY)
- Mapbox geocoding + directions (MAPBOX_TOKEN)
With neither configured the distance is 0 and the minimum fee applies.
"""
import os
import logging
import asyncio
import httpx
from typing import Any, Dict, Optional

from services.pricing import round_to_cents
from services.settings_service import get_org_settings

logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.344
FREE_DELIVERY_MILES = 120

GOOGLE_DISTANCE_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"
MAPBOX_GEOCODE_URL = "https://api.mapbox.com/search/geocode/v6/forward"
MAPBOX_DIRECTIONS_URL = "https://api.mapbox.com/directions/v5/mapbox/driving"


class DeliveryQuoteError(Exception):
    """Distance provider failed or returned an unusable response."""


def compute_delivery_fee(miles: float, rate: float, minimum: float, free_miles: float = FREE_DELIVERY_MILES) -> float:
    """Minimum fee covers the first free_miles; beyond that, per-mile on the excess."""
    fee = minimum
    if miles > free_miles:
        fee = max(minimum, (miles - free_miles) * rate)
    return round_to_cents(fee)


def build_delivery_address(buyer_info: Optional[Dict[str, Any]]) -> Optional[str]:
    if not buyer_info:
        return None
    explicit = (buyer_info.get("delivery_address") or "").strip()
    if explicit:
        return explicit
    parts = [
        (buyer_info.get(key) or "").strip()
        for key in ("address", "city", "state", "zip")
    ]
    parts = [p for p in parts if p]
    if not (buyer_info.get("address") or "").strip():
        return None
    return ", ".join(parts)


class DistanceClient:
    """Driving distance lookups against Google or Mapbox."""

    def __init__(
        self,
        google_key: Optional[str] = None,
        mapbox_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.google_key = google_key if google_key is not None else os.getenv("GOOGLE_MAPS_API_KEY", "")
        self.mapbox_token = mapbox_token if mapbox_token is not None else os.getenv("MAPBOX_TOKEN", "")
        self.timeout = timeout
        self.transport = transport

    @property
    def provider(self) -> Optional[str]:
        if self.google_key:
            return "google"
        if self.mapbox_token:
            return "mapbox"
        return None

    async def distance_miles(self, origin: str, destination: str) -> Dict[str, Any]:
        result = {"miles": 0.0, "origin": origin, "destination": destination, "provider": self.provider}
        if not self.provider:
            logger.warning("No distance provider configured; delivery priced at the minimum")
            return result

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                if self.provider == "google":
                    return await self._google(client, origin, destination, result)
                return await self._mapbox(client, origin, destination, result)
        except httpx.HTTPError as e:
            raise DeliveryQuoteError(f"{self.provider} distance lookup failed: {e}") from e
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise DeliveryQuoteError(f"{self.provider} returned an unusable response: {e!r}") from e

    async def _google(self, client: httpx.AsyncClient, origin: str, destination: str, result: Dict[str, Any]) -> Dict[str, Any]:
        response = await client.get(GOOGLE_DISTANCE_URL, params={
            "origins": origin,
            "destinations": destination,
            "key": self.google_key,
            "departure_time": "now",
            "units": "imperial",
        })
        response.raise_for_status()
        data = response.json()
        try:
            element = data["rows"][0]["elements"][0]
        except (KeyError, IndexError) as e:
            raise DeliveryQuoteError(f"Unexpected distance matrix response: {data.get('status')}") from e
        if element.get("status") not in (None, "OK"):
            raise DeliveryQuoteError(f"Route not found: {element.get('status')}")

        meters = (element.get("distance") or {}).get("value") or 0
        result["miles"] = meters / METERS_PER_MILE
        result["origin"] = (data.get("origin_addresses") or [origin])[0]
        result["destination"] = (data.get("destination_addresses") or [destination])[0]
        return result

    async def _geocode(self, client: httpx.AsyncClient, query: str) -> Optional[tuple]:
        response = await client.get(MAPBOX_GEOCODE_URL, params={"q": query, "access_token": self.mapbox_token})
        response.raise_for_status()
        features = response.json().get("features") or []
        if not features:
            return None
        lng, lat = features[0]["geometry"]["coordinates"][:2]
        return lng, lat

    async def _mapbox(self, client: httpx.AsyncClient, origin: str, destination: str, result: Dict[str, Any]) -> Dict[str, Any]:
        o, d = await asyncio.gather(self._geocode(client, origin), self._geocode(client, destination))
        if not o or not d:
            raise DeliveryQuoteError("Address could not be geocoded")

        url = f"{MAPBOX_DIRECTIONS_URL}/{o[0]},{o[1]};{d[0]},{d[1]}"
        response = await client.get(url, params={"access_token": self.mapbox_token, "overview": "false"})
        response.raise_for_status()
        routes = response.json().get("routes") or []
        if not routes:
            raise DeliveryQuoteError("No driving route found")
        result["miles"] = (routes[0].get("distance") or 0) / METERS_PER_MILE
        return result


async def quote_delivery(destination: str, distance_client: Optional[DistanceClient] = None) -> Dict[str, Any]:
    """Price delivery from the configured factory to a destination address."""
    settings = await get_org_settings()
    pricing = settings["pricing"]
    origin = settings["factory"]["address"]
    rate = float(pricing["delivery_rate_per_mile"])
    minimum = float(pricing["delivery_minimum"])

    client = distance_client or DistanceClient()
    distance = await client.distance_miles(origin, destination)
    miles = round(distance["miles"], 1)
    fee = compute_delivery_fee(distance["miles"], rate, minimum)

    logger.info("Delivery quote provider=%s miles=%.1f fee=%.2f", distance["provider"], miles, fee)
    return {
        "miles": miles,
        "fee": fee,
        "rate": rate,
        "minimum": minimum,
        "free_miles": FREE_DELIVERY_MILES,
        "origin": distance["origin"],
        "destination": distance["destination"],
        "provider": distance["provider"],
    }
