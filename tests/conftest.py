import sys
from pathlib import Path

TERRAIN_LOD_SRC = Path(__file__).resolve().parents[1] / "src"

sys.path.insert(0, str(TERRAIN_LOD_SRC))
