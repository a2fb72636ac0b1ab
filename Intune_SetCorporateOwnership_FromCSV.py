#!/usr/bin/env python3
"""
Intune_SetCorporateOwnership_FromCSV.py

Reads DEVICE IDs from a CSV file (column "DeviceID", optional "Device name")
and changes each Intune managed device's ownership from personal to
corporate via:

    GET   https://graph.microsoft.com/v1.0/deviceManagement/managedDevices/{id}
    PATCH https://graph.microsoft.com/v1.0/deviceManagement/managedDevices/{id}

Features:
- Uses Intune_OAuth.connect_graph() for the Graph session (optional tenant)
- Validates the CSV path and the DeviceID column before any Graph call
- Re-checks every device right before changing it:
      404                 -> skipped (not found)
      already "company"   -> skipped (already corporate)
      other errors        -> failed, batch continues
- --confirm Y prompts before each change (default), --confirm N applies directly
- Blank DeviceID cells are skipped with a warning
- Prints a JSON summary at the end, optional results CSV
- Never prints the access token

Usage:
    python Intune_SetCorporateOwnership_FromCSV.py devices.csv [--tenant-id ID] [--confirm Y|N]
"""

import os
import csv
import json
import enum
import argparse
from urllib.parse import quote
from typing import Dict, Any, List, Tuple, Optional, Callable

import requests
from Intune_OAuth import connect_graph, disconnect_graph


DEVICE_ID_COLUMN = "DeviceID"
DEVICE_NAME_COLUMN = "Device name"

TARGET_OWNER_TYPE = "company"
SELECT_FIELDS = "id,deviceName,managedDeviceOwnerType"

# Eligibility statuses
ELIGIBLE = "ELIGIBLE"
NOT_FOUND = "NOT_FOUND"
ALREADY_CORPORATE = "ALREADY_CORPORATE"
CHECK_FAILED = "CHECK_FAILED"

# Outcomes
UPDATED = "UPDATED"
SKIPPED_NOT_FOUND = "SKIPPED_NOT_FOUND"
SKIPPED_ALREADY_CORPORATE = "SKIPPED_ALREADY_CORPORATE"
SKIPPED_USER_DECLINED = "SKIPPED_USER_DECLINED"
SKIPPED_BLANK_ID = "SKIPPED_BLANK_ID"
FAILED = "FAILED"

OUTCOMES = (
    UPDATED,
    SKIPPED_NOT_FOUND,
    SKIPPED_ALREADY_CORPORATE,
    SKIPPED_USER_DECLINED,
    SKIPPED_BLANK_ID,
    FAILED,
)


class ConfirmationMode(enum.Enum):
    PROMPT = "Y"
    AUTO_APPROVE = "N"


# -------------------- INPUT -------------------- #

def validate_input_path(path: str) -> str:
    """Resolve path to a canonical absolute path and confirm it is a readable file."""
    if not path:
        raise FileNotFoundError("No CSV path given")

    resolved = os.path.realpath(os.path.expanduser(path))

    if not os.path.isfile(resolved):
        raise FileNotFoundError(f"{path} not found (resolved to {resolved})")
    if not os.access(resolved, os.R_OK):
        raise PermissionError(f"{resolved} is not readable")

    return resolved


def read_device_rows(path: str) -> List[Dict[str, str]]:
    with open(path, "r", newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        fieldnames = reader.fieldnames or []

        if DEVICE_ID_COLUMN not in fieldnames:
            raise ValueError(
                f"Required column '{DEVICE_ID_COLUMN}' not found in {path}. "
                f"Columns present: {', '.join(fieldnames) or '(none)'}"
            )

        rows = []
        for row in reader:
            rows.append({
                DEVICE_ID_COLUMN: (row.get(DEVICE_ID_COLUMN) or "").strip(),
                DEVICE_NAME_COLUMN: (row.get(DEVICE_NAME_COLUMN) or "").strip(),
            })

    return rows


# -------------------- GRAPH CALLS -------------------- #

def _device_url(token_state: Dict[str, Any], device_id: str) -> str:
    return f"{token_state['base_url']}/deviceManagement/managedDevices/{quote(device_id, safe='')}"


def _headers(token_state: Dict[str, Any]) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {token_state['access_token']}",
        "Accept": "application/json",
    }


def check_eligibility(
    session: requests.Session,
    token_state: Dict[str, Any],
    device_id: str,
) -> Tuple[str, Optional[Dict[str, Any]], Optional[str]]:
    """
    Fetch the device's live record and decide whether it may be converted.

    Returns:
        (status, device, error_message)
        - ELIGIBLE          -> device dict, no error
        - NOT_FOUND         -> 404
        - ALREADY_CORPORATE -> device dict, owner type already "company"
        - CHECK_FAILED      -> error_message describes the failure
    """
    try:
        response = session.get(
            _device_url(token_state, device_id),
            headers=_headers(token_state),
            params={"$select": SELECT_FIELDS},
        )
    except requests.RequestException as e:
        return CHECK_FAILED, None, f"Request failed — {e}"

    if response.status_code == 404:
        print(f"WARN: Device '{device_id}' not found in Intune (404).")
        return NOT_FOUND, None, None

    if response.status_code == 401:
        return CHECK_FAILED, None, "401 Unauthorized — session expired or invalid"

    if response.status_code == 403:
        return CHECK_FAILED, None, f"403 Forbidden — {response.text}"

    if not response.ok:
        return CHECK_FAILED, None, f"HTTP {response.status_code} — {response.text}"

    try:
        device = response.json()
    except json.JSONDecodeError:
        return CHECK_FAILED, None, f"Failed to parse JSON — {response.text}"

    if not isinstance(device, dict):
        return CHECK_FAILED, None, f"Unexpected response body — {response.text}"

    owner_type = device.get("managedDeviceOwnerType") or ""
    if not isinstance(owner_type, str):
        return CHECK_FAILED, None, f"Unexpected managedDeviceOwnerType — {owner_type!r}"

    owner_type = owner_type.lower()
    if owner_type == TARGET_OWNER_TYPE:
        print(f"WARN: Device '{device_id}' is already corporate-owned.")
        return ALREADY_CORPORATE, device, None

    return ELIGIBLE, device, None


def set_corporate_ownership(
    session: requests.Session,
    token_state: Dict[str, Any],
    device_id: str,
) -> Tuple[bool, Optional[str]]:
    """PATCH managedDeviceOwnerType to "company". Returns (ok, error_message)."""
    headers = _headers(token_state)
    headers["Content-Type"] = "application/json"
    payload = {"managedDeviceOwnerType": TARGET_OWNER_TYPE}

    try:
        response = session.patch(
            _device_url(token_state, device_id),
            headers=headers,
            data=json.dumps(payload),
        )
    except requests.RequestException as e:
        return False, f"Request failed — {e}"

    if response.status_code in (200, 204):
        return True, None

    if response.status_code == 404:
        return False, "404 Not Found — device removed after eligibility check"

    return False, f"HTTP {response.status_code} — {response.text}"


# -------------------- ORCHESTRATION -------------------- #

def _result(row: Dict[str, str], outcome: str, detail: str = "") -> Dict[str, str]:
    return {
        DEVICE_ID_COLUMN: row.get(DEVICE_ID_COLUMN, ""),
        DEVICE_NAME_COLUMN: row.get(DEVICE_NAME_COLUMN, ""),
        "Outcome": outcome,
        "Detail": detail,
    }


def _confirm(ask: Callable[[str], str], display_name: str, device_id: str) -> bool:
    try:
        answer = ask(
            f"Change ownership of '{display_name}' ({device_id}) to corporate? (Y/N): "
        )
    except EOFError:
        # No operator input available
        print()
        return False
    return (answer or "").strip().upper() in ("Y", "YES")


def process_device(
    session: requests.Session,
    token_state: Dict[str, Any],
    row: Dict[str, str],
    mode: ConfirmationMode,
    ask: Callable[[str], str] = input,
) -> Dict[str, str]:
    """Resolve one device completely; per-device errors become outcomes."""
    device_id = row.get(DEVICE_ID_COLUMN, "")
    if not device_id:
        print(f"WARN: Skipping row with blank {DEVICE_ID_COLUMN}.")
        return _result(row, SKIPPED_BLANK_ID)

    print(f"INFO: Checking device {device_id} ...")
    status, device, error_msg = check_eligibility(session, token_state, device_id)

    if status == NOT_FOUND:
        return _result(row, SKIPPED_NOT_FOUND)
    if status == ALREADY_CORPORATE:
        return _result(row, SKIPPED_ALREADY_CORPORATE)
    if status == CHECK_FAILED:
        print(f"ERROR checking {device_id}: {error_msg}")
        return _result(row, FAILED, error_msg or "")

    display_name = row.get(DEVICE_NAME_COLUMN) or (device or {}).get("deviceName") or device_id

    if mode is ConfirmationMode.PROMPT and not _confirm(ask, display_name, device_id):
        print(f"INFO: Skipped {device_id} (declined).")
        return _result(row, SKIPPED_USER_DECLINED)

    ok, error_msg = set_corporate_ownership(session, token_state, device_id)
    if not ok:
        print(f"ERROR updating {device_id}: {error_msg}")
        return _result(row, FAILED, error_msg or "")

    print(f"INFO: Device '{display_name}' ({device_id}) set to corporate.")
    return _result(row, UPDATED)


def run_batch(
    session: requests.Session,
    token_state: Dict[str, Any],
    rows: List[Dict[str, str]],
    mode: ConfirmationMode,
    ask: Callable[[str], str] = input,
) -> List[Dict[str, str]]:
    return [process_device(session, token_state, row, mode, ask) for row in rows]


# -------------------- REPORTING -------------------- #

def summarize(results: List[Dict[str, str]]) -> Dict[str, Any]:
    counts = {outcome: 0 for outcome in OUTCOMES}
    by_outcome: Dict[str, List[str]] = {outcome: [] for outcome in OUTCOMES}
    errors: Dict[str, str] = {}

    blank_rows: List[int] = []

    for index, r in enumerate(results, start=1):
        if r["Outcome"] == SKIPPED_BLANK_ID:
            blank_rows.append(index)
        counts[r["Outcome"]] += 1
        by_outcome[r["Outcome"]].append(r[DEVICE_ID_COLUMN])
        if r["Outcome"] == FAILED:
            errors[r[DEVICE_ID_COLUMN]] = r["Detail"]

    return {
        "counts": counts,
        "not_found": by_outcome[SKIPPED_NOT_FOUND],
        "already_corporate": by_outcome[SKIPPED_ALREADY_CORPORATE],
        "declined": by_outcome[SKIPPED_USER_DECLINED],
        "blank_id_rows": blank_rows,
        "error_devices": errors,
    }


def write_results_csv(results: List[Dict[str, str]], filename: str) -> None:
    print(f"INFO: Writing {len(results)} records to {filename} ...")
    fieldnames = [DEVICE_ID_COLUMN, DEVICE_NAME_COLUMN, "Outcome", "Detail"]
    with open(filename, "w", newline="", encoding="utf-8-sig") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(results)
    print("INFO: CSV writing complete.")


# -------------------- MAIN -------------------- #

def parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        description="Change Intune managed devices listed in a CSV from personal to corporate ownership."
    )
    ap.add_argument("csv_path", nargs="?", help=f"CSV file with a '{DEVICE_ID_COLUMN}' column")
    ap.add_argument("--tenant-id", help="Entra ID tenant (defaults to AZURE_TENANT_ID)")
    ap.add_argument(
        "--confirm",
        type=str.upper,
        choices=[m.value for m in ConfirmationMode],
        default=ConfirmationMode.PROMPT.value,
        help="Y = prompt before each change (default), N = apply without prompting",
    )
    ap.add_argument("--results-csv", help="Write per-device outcomes to this CSV file")
    ap.add_argument("--disconnect", action="store_true", help="Tear down the stored session and exit")

    args = ap.parse_args(argv)
    if not args.disconnect and not args.csv_path:
        ap.error("csv_path is required")
    return args


def main(argv=None) -> int:
    args = parse_args(argv)

    if args.disconnect:
        try:
            if not disconnect_graph():
                print("INFO: No existing session found.")
        except RuntimeError as e:
            print("ERROR:", e)
            return 1
        return 0

    mode = ConfirmationMode(args.confirm)

    try:
        csv_path = validate_input_path(args.csv_path)
    except (FileNotFoundError, PermissionError) as e:
        print("ERROR:", e)
        return 1

    try:
        rows = read_device_rows(csv_path)
    except (ValueError, csv.Error, UnicodeDecodeError) as e:
        print("ERROR:", e)
        return 1

    print(f"INFO: Loaded {len(rows)} device row(s) from {csv_path}")

    try:
        token_state = connect_graph(args.tenant_id)
    except Exception as e:
        print("ERROR obtaining Graph session:", e)
        return 1

    if mode is ConfirmationMode.AUTO_APPROVE:
        print("INFO: Confirmation disabled — eligible devices will be changed without prompting.")

    session = requests.Session()
    try:
        results = run_batch(session, token_state, rows, mode, ask=input)
    finally:
        session.close()

    summary = summarize(results)

    print("\nINFO: Summary:")
    print(f"  Updated:           {summary['counts'][UPDATED]}")
    print(f"  Not found:         {summary['counts'][SKIPPED_NOT_FOUND]}")
    print(f"  Already corporate: {summary['counts'][SKIPPED_ALREADY_CORPORATE]}")
    print(f"  Declined:          {summary['counts'][SKIPPED_USER_DECLINED]}")
    print(f"  Blank IDs:         {summary['counts'][SKIPPED_BLANK_ID]}")
    print(f"  Failed:            {summary['counts'][FAILED]}")

    print("\n---- FINAL RESULT (JSON SUMMARY) ----")
    print(json.dumps(summary, indent=2))
    print("-------------------------------------\n")

    if args.results_csv:
        write_results_csv(results, args.results_csv)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
