from __future__ import annotations
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Any
import json

@dataclass
class State:
    brevo_api_key: str = ""              # runtime-set key, takes precedence over BREVO_API_KEY
    notification_permission: str = ""    # remembered answer to the local permission request
    last_tick_iso: str = ""

def load_state(path: str) -> State:
    p = Path(path)
    if not p.exists():
        return State()
    data: Dict[str, Any] = json.loads(p.read_text(encoding="utf-8"))
    return State(
        brevo_api_key=str(data.get("brevo_api_key", "")),
        notification_permission=str(data.get("notification_permission", "")),
        last_tick_iso=str(data.get("last_tick_iso", "")),
    )

def save_state(path: str, state: State) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(asdict(state), indent=2), encoding="utf-8")
