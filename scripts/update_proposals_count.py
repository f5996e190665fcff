#!/usr/bin/env python3
"""
Proposal Count Repair Script

Recounts proposals for every project and fixes Project.proposals_count
where it drifted from the proposal rows.

Usage:
    python3 scripts/update_proposals_count.py
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# The app starts the reconciliation scheduler on import unless told otherwise
os.environ.setdefault('ENABLE_SCHEDULER', 'false')

from app import app, recount_proposals

GREEN = '\033[92m'
YELLOW = '\033[93m'
RESET = '\033[0m'


def main():
    with app.app_context():
        print("Recounting proposals...")
        updated = recount_proposals()

        if not updated:
            print(f"{GREEN}✅ All project proposal counts are correct{RESET}")
            return 0

        for project in updated:
            print(f"{YELLOW}⚠️  Project {project['id']}: {project['old']} → {project['new']}{RESET}")
        print(f"{GREEN}✅ Updated {len(updated)} projects{RESET}")
        return 0


if __name__ == '__main__':
    sys.exit(main())
