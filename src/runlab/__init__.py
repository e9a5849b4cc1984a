"""runlab – running data reconciliation lab.

Modules: geo, models, export_parser, track_parser, reconcile, playback,
analytics, strava_source, store, app, main.
"""

__version__ = "1.0.0"
