import os
import json
import time
from pathlib import Path
from typing import Any, Dict, Optional


def _resolve_dir(dev_default: bool = True) -> Optional[Path]:
  log_dir = os.getenv("TROUBLESHOOT_API_LOG_DIR") or os.getenv("LOGS_DIR")
  env = (os.getenv("ENVIRONMENT") or os.getenv("PY_ENV") or "dev").lower()
  if not log_dir and dev_default and env in {"dev", "development", "local", "localhost"}:
    log_dir = ".log_api"
  if not log_dir:
    return None
  return Path(log_dir).expanduser()


def _file_for(service: str, dev_default: bool = True) -> Optional[Path]:
  base = _resolve_dir(dev_default)
  if not base:
    return None
  d = time.gmtime()
  fname = f"{service}-{d.tm_year:04d}-{d.tm_mon:02d}-{d.tm_mday:02d}.jsonl"
  p = base / fname
  try:
    p.parent.mkdir(parents=True, exist_ok=True)
  except Exception:
    return None
  return p


def _record(service: str, level: str, message: str, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
  return {
    "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime()),
    "level": level,
    "service": service,
    "message": message,
    **({"data": data} if isinstance(data, dict) and data else {}),
  }


def log_json(
  service: str,
  level: str,
  message: str,
  data: Optional[Dict[str, Any]] = None,
  dev_default: bool = True,
) -> None:
  try:
    rec = _record(service, level, message, data)
    line = json.dumps(rec, ensure_ascii=False, default=str)
    # stdout for process manager capture
    print(line)
    # file append when LOGS_DIR configured (or .log_api in dev, unless dev_default is off)
    fp = _file_for(service, dev_default)
    if fp:
      with fp.open('a', encoding='utf-8') as fh:
        fh.write(line + "\n")
  except Exception:
    # best-effort only
    pass


def log_turn(
  conversation_id: Optional[str],
  stage_in: str,
  stage_out: str,
  status: str,
  tiers: Optional[Dict[str, str]] = None,
  elapsed_ms: Optional[float] = None,
) -> None:
  """One record per assistant turn: stage movement plus which tier answered.

  Written to a file only when TROUBLESHOOT_API_LOG_DIR or LOGS_DIR is set.
  """
  data: Dict[str, Any] = {
    "conversation_id": conversation_id,
    "stage_in": stage_in,
    "stage_out": stage_out,
    "status": status,
  }
  if tiers:
    data["tiers"] = dict(tiers)
  if elapsed_ms is not None:
    data["elapsed_ms"] = round(float(elapsed_ms), 1)
  log_json("assistant", "info", "turn", data, dev_default=False)
