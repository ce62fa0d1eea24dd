from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def test_model_endpoints_are_wired_in_main():
    source = (REPO_ROOT / "showcase" / "main.py").read_text(encoding="utf-8")

    assert '@router.get("/api/models")' in source
    assert '@router.post("/api/models", status_code=201)' in source
    assert '@router.post("/api/models/reorder")' in source
    assert '@router.post("/api/models/batch-delete")' in source
    assert '@router.put("/api/models/{model_id}")' in source
    assert '@router.delete("/api/models/{model_id}")' in source


def test_background_endpoints_are_wired_in_main():
    source = (REPO_ROOT / "showcase" / "main.py").read_text(encoding="utf-8")

    assert '@router.get("/api/backgrounds")' in source
    assert '@router.post("/api/backgrounds", status_code=201)' in source
    assert '@router.post("/api/backgrounds/reorder")' in source
    assert '@router.put("/api/backgrounds/{background_id}")' in source
    assert '@router.delete("/api/backgrounds/{background_id}")' in source


def test_static_mounts_are_registered_after_routes():
    source = (REPO_ROOT / "showcase" / "main.py").read_text(encoding="utf-8")

    assert source.index("app.include_router(router)") < source.index('app.mount("/models"')
    assert source.index('app.mount("/models"') < source.index('app.mount("/", ')
