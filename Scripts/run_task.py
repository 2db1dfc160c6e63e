from __future__ import annotations

import argparse
import json
import logging
from typing import List

from ort_kit import load_pipeline, load_task_config


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a detection / classification / embedding task and print JSON.")
    parser.add_argument("--config", required=True, help="Task config JSON (task_type, model_path, ...).")
    parser.add_argument("inputs", nargs="+", help="Image paths, or texts when the config sets input_type=text.")
    parser.add_argument(
        "--backend", default=None, help="Force backend: onnxruntime / torchscript (default: from the model suffix)."
    )
    parser.add_argument(
        "--onnx-providers",
        default=None,
        help="Comma-separated ORT providers, e.g. CUDAExecutionProvider,CPUExecutionProvider.",
    )
    parser.add_argument("--root", default="auto", help="Base directory for relative model paths.")
    parser.add_argument("--max-sessions", type=int, default=4, help="Sessions kept loaded at once.")
    parser.add_argument("--max-memory-mb", type=int, default=4096, help="Estimated session memory budget (MiB).")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...).")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_task_config(args.config)

    onnx_providers = None
    if args.onnx_providers:
        onnx_providers = [p.strip() for p in str(args.onnx_providers).split(",") if p.strip()]

    if args.max_memory_mb <= 0:
        raise ValueError("--max-memory-mb must be > 0")

    pipeline = load_pipeline(
        backend=args.backend,
        model_path=config.model_path,
        max_sessions=int(args.max_sessions),
        max_memory_bytes=int(args.max_memory_mb) * 1024 * 1024,
        root=args.root,
        onnx_providers=onnx_providers,
    )

    inputs: List[object] = list(args.inputs)
    try:
        results = pipeline.run(inputs, config)
    finally:
        pipeline.sessions.release_all()

    print(json.dumps([r.to_dict() for r in results], indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
