from __future__ import annotations

import os
import random
import time

from fastapi import FastAPI, Response


ZONE = os.getenv("ACP_ZONE", "local")
REVISION = os.getenv("ACP_REVISION", "dev")
FAIL_RATE = float(os.getenv("ACP_FAIL_RATE", "0"))  # 0..1
SLOW_HEALTH_S = float(os.getenv("ACP_SLOW_HEALTH_S", "3"))

app = FastAPI(title=f"Example backend {REVISION}@{ZONE}")
app.state.unhealthy = os.getenv("ACP_UNHEALTHY", "").lower() in ("1", "true", "yes")


@app.get("/health")
def health(response: Response) -> dict[str, str]:
    if app.state.unhealthy:
        response.status_code = 503
        return {"status": "unhealthy"}
    # Optional fault injection: a slow answer shows up as a probe timeout.
    if FAIL_RATE > 0 and random.random() < FAIL_RATE:
        time.sleep(SLOW_HEALTH_S)
    return {"status": "healthy"}


@app.post("/fault")
def toggle_fault(unhealthy: bool = True) -> dict[str, bool]:
    app.state.unhealthy = unhealthy
    return {"unhealthy": unhealthy}


@app.get("/")
def whoami() -> dict[str, str]:
    return {"zone": ZONE, "revision": REVISION}
