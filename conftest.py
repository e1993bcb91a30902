from __future__ import annotations

import importlib.util

# Scanner models validate addresses with the pydantic email extras.
# Skip collecting scanner tests when email-validator is not installed.
if importlib.util.find_spec("email_validator") is None:
    collect_ignore_glob = [
        "services/scanner/tests/*",
        "tests/bdd/test_scanner_bdd.py",
        "tests/test_smoke_harness.py",
    ]
