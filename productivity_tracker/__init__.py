# -*- coding: utf-8 -*-
"""Task scheduling and daily activity aggregation engine. Entry point: productivity_tracker.main.build_engine."""
