from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from runbox.api.dependencies import get_catalog
from runbox.runtime.catalog import CatalogError, JobCatalog


logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/jobs")
def list_jobs(catalog: JobCatalog = Depends(get_catalog)) -> list[str]:
    try:
        return catalog.list_jobs()
    except CatalogError as e:
        logger.error(f"Error loading available jobs: {e}")
        return []
