"""
Spatial index over PostGIS geometry columns.

Distances are measured on ``geography`` casts so they agree with the
haversine distances computed in the services.
"""

import logging
from typing import Any, Dict, List, Optional

from geoalchemy2 import Geography
from sqlalchemy import cast, func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mamacare.config import SRID
from mamacare.errors import StorageError
from mamacare.repository import CONVERTERS
from mamacare.schemas import Location

logger = logging.getLogger(__name__)


def make_point(location: Location):
    return func.ST_SetSRID(func.ST_MakePoint(location.longitude, location.latitude), SRID)


class PostGISSpatialIndex:
    """Radius, nearest-K and containment queries on ORM tables."""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _convert(table, rows):
        convert = CONVERTERS.get(table)
        if convert is None:
            return list(rows)
        return [convert(r) for r in rows]

    @staticmethod
    def _with_predicate(query, extra_predicate, args: Optional[Dict[str, Any]]):
        if extra_predicate is None:
            return query
        if isinstance(extra_predicate, str):
            return query.filter(text(extra_predicate).bindparams(**(args or {})))
        return query.filter(extra_predicate)

    def _run(self, operation: str, query_fn):
        try:
            return query_fn()
        except SQLAlchemyError as e:
            logger.error("Spatial query %s failed: %s", operation, e)
            self.db.rollback()
            raise StorageError(f"spatial query {operation} failed") from e

    def within_radius(self, table, geom_col: str, center: Location, radius_m: float,
                      extra_predicate=None, args: Optional[Dict[str, Any]] = None) -> List:
        """Rows within ``radius_m`` metres of ``center``, nearest first."""
        column = cast(getattr(table, geom_col), Geography(srid=SRID))
        point = cast(make_point(center), Geography(srid=SRID))

        def query():
            q = self.db.query(table).filter(func.ST_DWithin(column, point, radius_m))
            q = self._with_predicate(q, extra_predicate, args)
            return q.order_by(func.ST_Distance(column, point)).all()

        return self._convert(table, self._run("within_radius", query))

    def nearest_k(self, table, geom_col: str, center: Location, k: int,
                  extra_predicate=None, args: Optional[Dict[str, Any]] = None) -> List:
        """The ``k`` rows closest to ``center``, nearest first."""
        geometry = getattr(table, geom_col)
        point = make_point(center)
        exact = func.ST_Distance(cast(geometry, Geography(srid=SRID)), cast(point, Geography(srid=SRID)))

        def query():
            q = self.db.query(table).filter(geometry.isnot(None))
            q = self._with_predicate(q, extra_predicate, args)
            return q.order_by(geometry.op("<->")(point), exact).limit(k).all()

        rows = self._run("nearest_k", query)
        return self._convert(table, rows)

    def contains_point(self, table, geom_col: str, point: Location):
        """The first row whose geometry covers ``point`` (boundary included), or None."""
        geometry = getattr(table, geom_col)

        def query():
            return self.db.query(table).filter(func.ST_Covers(geometry, make_point(point))).first()

        row = self._run("contains_point", query)
        if row is None:
            return None
        return self._convert(table, [row])[0]
