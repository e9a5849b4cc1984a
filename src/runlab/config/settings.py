"""
runlab – Centralized Configuration
==================================
All athlete parameters, matching thresholds, parser limits and file paths
in one place. Edit this file to match YOUR physiology and data – never
hardcode values in individual modules.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Reads .env from the working directory (shell variables win).
load_dotenv(override=False)

# ============================================================
# PROJECT PATHS
# ============================================================
PROJECT_ROOT    = Path(os.environ.get("RUNLAB_HOME", Path.cwd())).resolve()

DATA_DIR        = PROJECT_ROOT / "data"
STORE_DIR       = DATA_DIR / "store"
ROUTES_DIR      = DATA_DIR / "routes"
LOGS_DIR        = PROJECT_ROOT / "logs"

WORKOUTS_STORE  = STORE_DIR / "workouts.json"
ROUTES_STORE    = STORE_DIR / "routes.json"

# ============================================================
# ATHLETE PROFILE
# ============================================================
MAX_HR          = 190          # Maximum heart rate (bpm)
RESTING_HR      = None         # Resting heart rate (bpm), e.g. 55; None → plain %HRmax zones

# Zone boundaries (fraction of HRmax, or of HRR when RESTING_HR is valid)
# Z1: <60 %, Z2: 60-70 %, Z3: 70-80 %, Z4: 80-90 %, Z5: >=90 %
ZONE_PCTS       = [0.60, 0.70, 0.80, 0.90]
ZONE_LABELS     = ["Zone 1 (Recovery)", "Zone 2 (Aerobic)", "Zone 3 (Tempo)",
                   "Zone 4 (Threshold)", "Zone 5 (Max)"]

# ============================================================
# SOURCES
# ============================================================
SOURCE_APPLE    = "apple"      # bulk health export (primary)
SOURCE_STRAVA   = "strava"     # third-party fitness API (secondary)

# ============================================================
# STREAMING EXPORT PARSER
# ============================================================
EXPORT_CHUNK_SIZE     = 1024 * 1024   # 1 MB reads
RUNNING_ACTIVITY_TYPE = "HKWorkoutActivityTypeRunning"

# Longest plausible single <Record …> opening tag (chars). Records carry a
# handful of attributes (~350 chars in real exports); 4 KB leaves headroom
# for long sourceName/device strings. Retained tail = this value.
MAX_RECORD_CHARS      = 4096
# A <Workout> element still open after this many chars is treated as corrupt.
MAX_WORKOUT_CHARS     = 8 * 1024 * 1024

CADENCE_MIN_SPM       = 100    # plausible running cadence window
CADENCE_MAX_SPM       = 250

KM_PER_MILE           = 1.609344

# ============================================================
# RECONCILIATION
# ============================================================
DEDUP_TIME_WINDOW_MIN   = 10      # start-time gate
DEDUP_MIN_DIST_KM       = 0.5     # distance gate floor
DEDUP_DIST_PCT          = 0.10    # … or 10 % of the larger distance
DEDUP_MIN_SIMILARITY    = 0.5     # combined score needed to drop a secondary

ENRICH_WINDOW_MIN       = 10      # other-source workout lookup for enrichment
LINK_WINDOW_MIN         = 5       # route ↔ workout start-time tolerance

SIMILARITY_MAX_CENTER_KM = 2.0    # centroids further apart → similarity 0
SIMILARITY_W_OVERLAP    = 0.5
SIMILARITY_W_DISTANCE   = 0.3
SIMILARITY_W_CENTER     = 0.2
SIMILAR_ROUTES_THRESHOLD = 0.5

CLUSTER_THRESHOLD_KM    = 2.0

# ============================================================
# PLAYBACK / RACE SIMULATION
# ============================================================
PLAYBACK_TICK_MS        = 50      # real-world tick (20 fps)
PLAYBACK_SPEED_DEFAULT  = 10      # simulated ms per real ms

# ============================================================
# ANALYTICS
# ============================================================
WEEKLY_LOOKBACK_WEEKS   = 12
VO2MAX_MIN              = 20.0    # ml/kg/min – plausible range
VO2MAX_MAX              = 90.0
BEST_PACE_FLOOR_MIN_KM  = 2.0     # faster than 2:00/km = GPS speed spike
MAX_PLAUSIBLE_PACE      = 20.0    # min/km – slower is walking/paused

# ============================================================
# STRAVA API
# ============================================================
STRAVA_PAGE_SIZE        = 200     # batch size stravalib uses when paging get_activities()
STRAVA_RATE_LIMIT_MAX   = 95      # Strava allows ~100 requests / 15 min
STRAVA_RATE_LIMIT_WINDOW = 15 * 60
STRAVA_RATE_LIMIT_MARGIN_S = 5.0
