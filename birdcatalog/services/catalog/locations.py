from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from birdcatalog.db.models.detection import Detection
from birdcatalog.db.models.location import Location

# 약 100m (위경도 0.001도) 이내면 같은 지점으로 본다
COORD_TOLERANCE = 0.001


def create_location(
    db: Session,
    latitude: float,
    longitude: float,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> Location:
    loc = Location(latitude=latitude, longitude=longitude, name=name, description=description)
    db.add(loc)
    db.commit()
    return loc


def find_location_by_coords(db: Session, latitude: float, longitude: float) -> Optional[Location]:
    stmt = (
        select(Location)
        .where(func.abs(Location.latitude - latitude) < COORD_TOLERANCE)
        .where(func.abs(Location.longitude - longitude) < COORD_TOLERANCE)
        .order_by(Location.id)
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def resolve_location(
    db: Session, latitude: float, longitude: float, name: Optional[str] = None
) -> tuple[Location, bool]:
    """(location, created)"""
    existing = find_location_by_coords(db, latitude, longitude)
    if existing is not None:
        return existing, False
    return create_location(db, latitude, longitude, name), True


def list_locations(db: Session) -> list[Location]:
    return list(db.execute(select(Location).order_by(Location.created_at.desc(), Location.id.desc())).scalars())


def list_locations_with_counts(db: Session) -> list[dict]:
    counts = (
        select(
            Detection.location_id.label("location_id"),
            func.count().label("detection_count"),
            func.count(func.distinct(Detection.scientific_name)).label("species_count"),
        )
        .where(Detection.location_id.is_not(None))
        .group_by(Detection.location_id)
        .subquery()
    )
    stmt = (
        select(
            Location,
            func.coalesce(counts.c.detection_count, 0),
            func.coalesce(counts.c.species_count, 0),
        )
        .outerjoin(counts, counts.c.location_id == Location.id)
        .order_by(func.coalesce(counts.c.detection_count, 0).desc(), Location.id)
    )
    out = []
    for loc, detection_count, species_count in db.execute(stmt):
        out.append(
            {
                "id": loc.id,
                "name": loc.name,
                "latitude": loc.latitude,
                "longitude": loc.longitude,
                "description": loc.description,
                "created_at": loc.created_at,
                "detection_count": detection_count,
                "species_count": species_count,
            }
        )
    return out
