from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from birdcatalog.core.errors import AnalysisAlreadyRunning
from birdcatalog.db.session import get_db, get_manager
from birdcatalog.schemas.catalog import (
    CatalogStats,
    ClearResult,
    DetectionFilter,
    DetectionOut,
    DetectionPage,
    LocationWithCounts,
    RunWithStats,
    SpeciesLocation,
    SpeciesSummary,
)
from birdcatalog.services.catalog import queries
from birdcatalog.services.catalog.lease import catalog_lease
from birdcatalog.services.catalog.locations import list_locations, list_locations_with_counts
from birdcatalog.services.catalog.runs import delete_run, list_runs_with_stats
from birdcatalog.services.tasks.jobs import AnalysisRunner
from birdcatalog.services.tasks.runtime import get_runner

router = APIRouter()


# ------- runs -------
@router.get("/runs", response_model=List[RunWithStats])
def get_runs(db: Session = Depends(get_db)):
    return list_runs_with_stats(db)


@router.delete("/runs/{run_id}")
def remove_run(run_id: int, db: Session = Depends(get_db)):
    if not delete_run(db, run_id):
        raise HTTPException(404, "Run not found")
    return {"deleted": run_id}


# ------- detections / species -------
@router.get("/detections", response_model=DetectionPage)
def get_detections(
    species: Optional[str] = None,
    scientific_names: List[str] = Query(default=[]),
    location_id: Optional[int] = None,
    run_id: Optional[int] = None,
    min_confidence: Optional[float] = Query(default=None, ge=0.0, le=1.0),
    sort_column: Optional[str] = None,
    sort_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=100, ge=1, le=10_000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    f = DetectionFilter(
        species=species,
        scientific_names=scientific_names,
        location_id=location_id,
        run_id=run_id,
        min_confidence=min_confidence,
        sort_column=sort_column,
        sort_dir=sort_dir,
        limit=limit,
        offset=offset,
    )
    rows, total = queries.get_detections(db, f)
    return DetectionPage(detections=[DetectionOut.model_validate(d) for d in rows], total=total)


@router.get("/species", response_model=List[SpeciesSummary])
def get_species(db: Session = Depends(get_db)):
    return queries.get_species_summary(db)


@router.get("/species/search", response_model=List[SpeciesSummary])
def search_species(q: str = Query(min_length=1), db: Session = Depends(get_db)):
    return queries.search_species(db, q)


@router.get("/species/{scientific_name}/locations", response_model=List[SpeciesLocation])
def get_species_locations(scientific_name: str, db: Session = Depends(get_db)):
    return queries.get_species_locations(db, scientific_name)


# ------- locations -------
@router.get("/locations", response_model=List[LocationWithCounts])
def get_locations(with_counts: bool = True, db: Session = Depends(get_db)):
    if with_counts:
        return list_locations_with_counts(db)
    return [LocationWithCounts.model_validate(loc) for loc in list_locations(db)]


@router.get("/locations/{location_id}/species", response_model=List[SpeciesSummary])
def get_location_species(location_id: int, db: Session = Depends(get_db)):
    return queries.get_location_species(db, location_id)


# ------- stats / maintenance -------
@router.get("/stats", response_model=CatalogStats)
def get_stats(db: Session = Depends(get_db)):
    return queries.get_catalog_stats(db)


@router.post("/clear", response_model=ClearResult)
def clear_catalog(db: Session = Depends(get_db), runner: AnalysisRunner = Depends(get_runner)):
    if runner.running:
        raise HTTPException(409, "Cannot clear the catalog while an analysis is running")
    try:
        with catalog_lease(get_manager().session_factory, owner="clear"):
            return queries.clear_database(db)
    except AnalysisAlreadyRunning:
        raise HTTPException(409, "Cannot clear the catalog while another process is analyzing it")
