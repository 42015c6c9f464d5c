# -*- coding: utf-8 -*-
"""
Reference Data Lookup

Facilities, plots and users are owned by an external CRUD layer. The
ledger stores only their ids and looks them up on demand, so a chain stays
valid when the referenced entity is edited, archived or never loaded.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from custody_ledger.models import CustodyChain

logger = logging.getLogger(__name__)


class Facility(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    facility_type: Optional[str] = Field(
        None,
        description="e.g. plantation, mill, refinery, port",
    )


class Plot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""


class ResolvedReferences(BaseModel):
    """Whatever is currently known about a chain's references."""

    source_plot: Optional[Plot] = None
    source_facility: Optional[Facility] = None
    destination_facility: Optional[Facility] = None


class ReferenceDataStore:
    """In-memory, read-mostly lookup of reference entities."""

    def __init__(self) -> None:
        self._facilities: Dict[str, Facility] = {}
        self._plots: Dict[str, Plot] = {}
        self._users: Dict[str, User] = {}
        self._lock = threading.Lock()

    def load_facilities(self, facilities: Iterable[Facility]) -> int:
        with self._lock:
            for facility in facilities:
                self._facilities[facility.id] = facility
            count = len(self._facilities)
        logger.debug("Reference store holds %d facilities", count)
        return count

    def load_plots(self, plots: Iterable[Plot]) -> int:
        with self._lock:
            for plot in plots:
                self._plots[plot.id] = plot
            count = len(self._plots)
        logger.debug("Reference store holds %d plots", count)
        return count

    def load_users(self, users: Iterable[User]) -> int:
        with self._lock:
            for user in users:
                self._users[user.id] = user
            count = len(self._users)
        logger.debug("Reference store holds %d users", count)
        return count

    def get_facility(self, facility_id: Optional[str]) -> Optional[Facility]:
        if facility_id is None:
            return None
        return self._facilities.get(facility_id)

    def get_plot(self, plot_id: Optional[str]) -> Optional[Plot]:
        if plot_id is None:
            return None
        return self._plots.get(plot_id)

    def get_user(self, user_id: Optional[str]) -> Optional[User]:
        if user_id is None:
            return None
        return self._users.get(user_id)

    def resolve(self, chain: CustodyChain) -> ResolvedReferences:
        """Look up a chain's references; unknown ids resolve to None."""
        return ResolvedReferences(
            source_plot=self.get_plot(chain.source_plot_ref),
            source_facility=self.get_facility(chain.source_facility_ref),
            destination_facility=self.get_facility(
                chain.destination_facility_ref,
            ),
        )


__all__ = [
    "Facility",
    "Plot",
    "User",
    "ResolvedReferences",
    "ReferenceDataStore",
]
