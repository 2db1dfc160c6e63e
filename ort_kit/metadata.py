from __future__ import annotations

from typing import Dict


def load_class_names(metadata_path: str) -> Dict[int, str]:
    """
    Load class labels for a model.

    Two layouts are understood. The `names:` block written next to exported
    models, either as an index mapping or as a list:

        names:
          0: person
          1: bicycle

        names:
          - person
          - bicycle

    Anything else is read as a plain label file, one label per line, where the
    line number is the class index.

    Parsing is line based so no YAML dependency is needed.
    """

    with open(metadata_path, "r", encoding="utf-8") as f:
        lines = [raw.rstrip("\n") for raw in f]

    if not any(line.strip() == "names:" for line in lines):
        return {i: line.strip() for i, line in enumerate(ln for ln in lines if ln.strip())}

    names: Dict[int, str] = {}
    in_names = False
    next_index = 0
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line == "names:":
            in_names = True
            continue
        if not in_names:
            continue
        # A new top-level key ends the block.
        if not raw.startswith((" ", "\t", "-")):
            break

        if line.startswith("-"):
            names[next_index] = line[1:].strip().strip("'").strip('"')
            next_index += 1
            continue

        if ":" not in line:
            continue
        left, right = line.split(":", 1)
        left = left.strip()
        if not left.isdigit():
            continue
        names[int(left)] = right.strip().strip("'").strip('"')

    return names
