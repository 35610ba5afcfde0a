#!/usr/bin/env python3
"""Example: Building a small document.

This example demonstrates the core workflow:
1. Write a list of chunks (code + options) to a JSON file
2. Knit them in one session so later chunks see earlier variables
3. Compare sequential and held output
4. Capture a matplotlib figure

Run from the skills/pyknit directory:
    python3 examples/01_basic_document.py
"""

import json
import subprocess
import sys
import tempfile
from pathlib import Path

# Path to knit_engine.py
KNIT_ENGINE = Path(__file__).parent.parent / "scripts" / "knit_engine.py"


def run_cmd(cmd: list, cwd: Path = None) -> tuple:
    """Run command and return (stdout, stderr, returncode)."""
    result = subprocess.run(cmd, capture_output=True, text=True, cwd=cwd)
    return result.stdout, result.stderr, result.returncode


def main():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)

        chunks = [
            {
                "code": "import statistics\nreadings = [12.1, 11.8, 12.6, 13.0]",
                "options": {"label": "setup"},
            },
            {
                "code": "mean = statistics.mean(readings)\nprint(f'mean: {mean:.2f}')\nmax(readings)",
                "options": {"label": "summary"},
            },
            {
                "code": "for r in readings:\n    print(round(r - mean, 2))\nprint('done')",
                "options": {"label": "residuals", "results": "hold"},
            },
            {
                "code": "import matplotlib.pyplot as plt\nplt.plot(readings)",
                "options": {"label": "trend", "fig.width": 5, "fig.height": 3},
            },
        ]
        chunk_file = tmpdir / "chunks.json"
        chunk_file.write_text(json.dumps(chunks, indent=2))

        print("=" * 60)
        print("Example 1: Basic document build")
        print("=" * 60)

        print("\n[Step 1] Knitting chunks to Markdown...")
        stdout, stderr, code = run_cmd(
            [sys.executable, str(KNIT_ENGINE), "knit", str(chunk_file), "--format", "markdown"],
            cwd=tmpdir,
        )
        if code != 0:
            print(f"Error: {stderr}")
            return 1
        print(stdout)

        print("\n[Step 2] Figures written:")
        for path in sorted((tmpdir / "figure").glob("*")):
            print(f"  {path.relative_to(tmpdir)} ({path.stat().st_size:,} bytes)")

        print("\n[Step 3] Same summary chunk as JSON records...")
        stdout, stderr, code = run_cmd(
            [sys.executable, str(KNIT_ENGINE), "exec", "-c", chunks[0]["code"] + "\n" + chunks[1]["code"]],
            cwd=tmpdir,
        )
        if code != 0:
            print(f"Error: {stderr}")
            return 1
        for record in json.loads(stdout)["outputs"]:
            print(f"  {record['type']:>7}: {record.get('text', record.get('path', record.get('message')))!r}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
