# -*- coding: utf-8 -*-
"""HTTP API for the custody ledger."""

from custody_ledger.api.router import router

__all__ = ["router"]
