import sys
from pathlib import Path


SRC = Path(__file__).resolve().parents[1] / "src"


def pytest_configure():
    # `common`, `state` and `sync` are imported as top-level packages from src/
    if str(SRC) not in sys.path:
        sys.path.insert(0, str(SRC))
