"""
Geo-Linkage Resolver

Assigns a location to restaurants (and their fact rows) that have none. A
location matches when its city is a case-insensitive substring of the
restaurant's free-text city. When several locations match, the one with the
shortest city name wins, then the lowest surrogate key. The choice is
deterministic but not necessarily the intended location, so every ambiguous
match is logged and counted. Shortest-first favours the broader place: a
restaurant in "New Delhi" is linked to "Delhi" even when a "New Delhi"
location exists.

Existing assignments are never overwritten.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_warehouse.database.models import DimLocation, DimRestaurant, FactOrder
from delivery_warehouse.exceptions import AmbiguousGeoMatch

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LocationCandidate:
    location_key: int
    city: str


@dataclass
class GeoLinkResult:
    """Outcome of one linkage pass"""
    restaurants_linked: int = 0
    restaurants_unmatched: int = 0
    facts_linked: int = 0
    ambiguous: List[AmbiguousGeoMatch] = field(default_factory=list)


def match_candidates(city: Optional[str], locations: Iterable[LocationCandidate]) -> List[LocationCandidate]:
    """Locations whose city occurs in ``city``, ignoring case"""
    if not city:
        return []
    haystack = city.casefold()
    return [
        loc for loc in locations
        if loc.city.strip() and loc.city.strip().casefold() in haystack
    ]


def rank_candidates(candidates: Iterable[LocationCandidate]) -> List[LocationCandidate]:
    """Order matches: shortest city name first, then lowest surrogate key"""
    return sorted(candidates, key=lambda loc: (len(loc.city.strip()), loc.location_key))


class GeoLinker:
    """
    Approximate restaurant -> location matcher.

    Example:
        linker = GeoLinker()
        result = GeoLinkResult()
        await linker.link_restaurants(session, result)
        ...  # merge facts
        await linker.link_facts(session, result)
    """

    async def _load_locations(self, session: AsyncSession) -> List[LocationCandidate]:
        result = await session.execute(
            select(DimLocation.location_key, DimLocation.city).order_by(DimLocation.location_key)
        )
        return [LocationCandidate(location_key=k, city=c) for k, c in result.all() if c]

    async def link_restaurants(self, session: AsyncSession, result: GeoLinkResult) -> None:
        """Resolve restaurants whose location_key is still null"""
        locations = await self._load_locations(session)
        pending = await session.execute(
            select(DimRestaurant.restaurant_key, DimRestaurant.restaurant_id_nat, DimRestaurant.city)
            .where(DimRestaurant.location_key.is_(None))
            .where(DimRestaurant.city.is_not(None))
            .order_by(DimRestaurant.restaurant_key)
        )

        assignments = []
        for restaurant_key, natural_key, city in pending.all():
            ranked = rank_candidates(match_candidates(city, locations))
            if not ranked:
                result.restaurants_unmatched += 1
                continue

            chosen = ranked[0]
            if len(ranked) > 1:
                warning = AmbiguousGeoMatch(
                    f"{len(ranked)} locations match city {city!r}; "
                    f"picked location_key={chosen.location_key} ({chosen.city!r})",
                    candidates=len(ranked),
                    relation=DimRestaurant.__tablename__,
                    natural_key=natural_key,
                )
                logger.warning(
                    "Ambiguous geo match",
                    restaurant=natural_key,
                    city=city,
                    candidates=[loc.location_key for loc in ranked],
                    chosen=chosen.location_key,
                )
                result.ambiguous.append(warning)

            assignments.append({"restaurant_key": restaurant_key, "location_key": chosen.location_key})

        if assignments:
            await session.execute(update(DimRestaurant), assignments)
        result.restaurants_linked = len(assignments)

    async def link_facts(self, session: AsyncSession, result: GeoLinkResult) -> None:
        """Copy the restaurant's location onto fact rows that have none"""
        restaurant_location = (
            select(DimRestaurant.location_key)
            .where(DimRestaurant.restaurant_key == FactOrder.restaurant_key)
            .scalar_subquery()
        )
        linkable = select(DimRestaurant.restaurant_key).where(DimRestaurant.location_key.is_not(None))

        outcome = await session.execute(
            update(FactOrder)
            .where(FactOrder.location_key.is_(None))
            .where(FactOrder.restaurant_key.in_(linkable))
            .values(location_key=restaurant_location)
            .execution_options(synchronize_session=False)
        )
        result.facts_linked = outcome.rowcount or 0

        logger.info(
            "Geo linkage complete",
            restaurants_linked=result.restaurants_linked,
            restaurants_unmatched=result.restaurants_unmatched,
            facts_linked=result.facts_linked,
            ambiguous=len(result.ambiguous),
        )

