"""Local stand-in for the processing pipeline, used by tests and ``--test`` mode."""

from __future__ import annotations

import argparse
import subprocess
import sys
import time
from pathlib import Path

FAKE_OUTPUTS = {
    "odm_orthophoto/odm_orthophoto.tif": b"II*\x00fake-orthophoto",
    "odm_georeferencing/odm_georeferenced_model.laz": b"LASF-fake-pointcloud",
    "odm_dem/dsm.tif": b"II*\x00fake-dsm",
    "odm_report/report.pdf": b"%PDF-1.4 fake report",
}


def main(argv: list[str] | None = None) -> int:
    """Print progress lines, write fake outputs, exit with the requested code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--project-path", required=True)
    parser.add_argument("--fake-steps", type=int, default=3)
    parser.add_argument("--fake-step-seconds", type=float, default=0.0)
    parser.add_argument("--fake-exit-code", type=int, default=0)
    parser.add_argument("--fake-child-seconds", type=float, default=0.0)
    raw_args = list(sys.argv[1:] if argv is None else argv)
    if not raw_args:
        parser.error("project name is required")
    name = raw_args.pop()
    args, unknown = parser.parse_known_args(raw_args)

    project_dir = Path(args.project_path) / name
    images = sorted((project_dir / "images").glob("*"))
    print(f"[INFO] Processing {name} with {len(images)} images", flush=True)
    if unknown:
        print(f"[INFO] Extra arguments: {' '.join(unknown)}", flush=True)

    if args.fake_child_seconds > 0:
        child = subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", f"import time; time.sleep({args.fake_child_seconds})"],
        )
        (project_dir / "fake_child.pid").write_text(str(child.pid), "utf-8")
        print(f"[INFO] Started helper process {child.pid}", flush=True)

    for step in range(1, args.fake_steps + 1):
        print(f"[INFO] Running step {step}/{args.fake_steps}", flush=True)
        if args.fake_step_seconds > 0:
            time.sleep(args.fake_step_seconds)

    if args.fake_exit_code != 0:
        print(f"[ERROR] Failing with exit code {args.fake_exit_code}", file=sys.stderr, flush=True)
        return args.fake_exit_code

    for relative, payload in FAKE_OUTPUTS.items():
        target = project_dir / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(payload)
    print("[INFO] ODM app finished", flush=True)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
