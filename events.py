# events.py
from models import utcnow, to_iso


def log(message):
    print(f"[{to_iso(utcnow())}] {message}", flush=True)


def log_transition(kind, entity_id, old_state, new_state, extra=""):
    log(f"{kind} {entity_id}: {old_state} → {new_state} {extra}".rstrip())
