#!/usr/bin/env python3
"""Stand-in for the provisioner, client and benchmark executables used in tests.

Usage: stub_collaborator.py <role> <events-file> <ok|fail> [args...]
Every invocation appends its role to the events file before doing anything else.
"""

import json
import os
import sys
import time
from pathlib import Path


def main(argv):
    role, events, fail = argv[1], Path(argv[2]), argv[3] == "fail"
    with events.open("a", encoding="utf-8") as f:
        f.write(role + "\n")

    if role == "setup":
        if fail:
            return 3
        root = Path(os.environ["CHUTNEY_DATA_DIR"])
        (root / "nodes").mkdir(parents=True, exist_ok=True)
        (root / "nodes" / "arti.toml").write_text("# stub client config\n", encoding="utf-8")
        return 0
    if role == "teardown":
        return 4 if fail else 0
    if role == "client":
        if fail:
            return 5
        time.sleep(60)
        return 0
    if role == "bench":
        out = Path(argv[argv.index("-o") + 1])
        if fail:
            out.write_text("{partial", encoding="utf-8")
            return 7
        payload = {"log_level": os.environ.get("RUST_LOG"), "args": argv[4:]}
        out.write_text(json.dumps(payload), encoding="utf-8")
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv))
