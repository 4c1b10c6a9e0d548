"""
Routing and geocoding provider client.

Route estimates come from OSRM when road distance is enabled. Any provider failure
falls back to a straight-line (haversine) estimate, so callers never see an error
from here. Address search goes to Nominatim and returns an empty list on failure.
"""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import requests

import config

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371


@dataclass
class RouteEstimate:
    distance_km: float
    duration_min: float
    geometry: Optional[str] = None  # encoded polyline, OSRM only
    source: str = "haversine"


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers between two coordinates."""
    lon1, lat1, lon2, lat2 = map(math.radians, [lon1, lat1, lon2, lat2])
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * math.asin(math.sqrt(a)) * EARTH_RADIUS_KM


class RoutingClient:

    def __init__(self, session: Optional[requests.Session] = None, use_road_distance: Optional[bool] = None):
        self.session = session or requests.Session()
        self.use_road_distance = config.USE_ROAD_DISTANCE if use_road_distance is None else use_road_distance

    def estimate_route(self, points: Sequence[Tuple[float, float]]) -> Optional[RouteEstimate]:
        """
        Estimate distance and duration along an ordered list of (lat, lng) points.

        Returns None when fewer than two points are given.
        """
        points = list(points)
        if len(points) < 2:
            return None

        if self.use_road_distance:
            estimate = self._osrm_route(points)
            if estimate is not None:
                return estimate
            logger.warning("Falling back to haversine route estimate")
            return self._straight_line(points, config.HAVERSINE_FALLBACK_MULTIPLIER)

        return self._straight_line(points, 1.0)

    def search_address(self, query: str, limit: int = 5) -> List[dict]:
        """Candidate coordinates for a free-text address."""
        if not query or not query.strip():
            return []
        try:
            r = self.session.get(
                config.NOMINATIM_URL,
                params={"q": query, "format": "json", "limit": limit},
                headers={"User-Agent": config.APP_NAME},
                timeout=config.OSRM_TIMEOUT_SECONDS,
            )
            r.raise_for_status()
            results = r.json()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Address search failed: {e}")
            return []
        except ValueError as e:
            logger.warning(f"Address search returned invalid JSON: {e}")
            return []

        candidates = []
        for item in results:
            try:
                candidates.append({
                    "latitude": float(item["lat"]),
                    "longitude": float(item["lon"]),
                    "address": item.get("display_name"),
                })
            except (KeyError, TypeError, ValueError):
                continue
        return candidates

    def _osrm_route(self, points: List[Tuple[float, float]]) -> Optional[RouteEstimate]:
        # OSRM expects lon,lat order
        coords = ";".join(f"{lng},{lat}" for lat, lng in points)
        url = f"{config.OSRM_SERVER_URL}/route/v1/driving/{coords}?overview=full&geometries=polyline"
        try:
            r = self.session.get(url, timeout=config.OSRM_TIMEOUT_SECONDS)
            r.raise_for_status()
            data = r.json()
            if data.get("code") != "Ok" or not data.get("routes"):
                logger.warning(f"OSRM returned no route: {data.get('code')}")
                return None
            route = data["routes"][0]
            return RouteEstimate(
                distance_km=round(route["distance"] / 1000, 3),
                duration_min=round(route["duration"] / 60, 1),
                geometry=route.get("geometry"),
                source="osrm",
            )
        except requests.exceptions.Timeout:
            logger.warning("OSRM request timed out")
        except requests.exceptions.RequestException as e:
            logger.warning(f"OSRM request failed: {e}")
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"OSRM response parsing failed: {e}")
        return None

    @staticmethod
    def _straight_line(points: List[Tuple[float, float]], multiplier: float) -> RouteEstimate:
        distance = sum(
            haversine_distance(a[0], a[1], b[0], b[1])
            for a, b in zip(points, points[1:])
        ) * multiplier
        return RouteEstimate(
            distance_km=round(distance, 3),
            duration_min=round(distance / config.AVG_SPEED_KMH * 60, 1),
            source="haversine",
        )
