#!/usr/bin/env python3
"""Quick script to trigger a single recovery pass for debugging."""
import json
import os
import sys

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'backend'))

from app.workers.recovery_loop import run_recovery_once


def main():
    print("=== Triggering single recovery pass ===")
    report = run_recovery_once()
    print(json.dumps(report, indent=2, default=str))
    print(f"=== halted={report.get('halted')} failed_steps={report.get('failed_steps')} ===")


if __name__ == "__main__":
    main()
