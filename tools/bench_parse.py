import argparse
import os
import time

import core_calc as core
from formats_core import parse_model_bytes


def _bench_file(path: str) -> None:
    with open(path, "rb") as f:
        data = f.read()
    started = time.perf_counter()
    mesh = parse_model_bytes(path, data)
    parsed_s = time.perf_counter() - started
    volume_cm3, source = core.compute_volume_cm3(mesh)
    elapsed_s = time.perf_counter() - started
    file_type = os.path.splitext(path)[1].lower().lstrip(".")
    print(
        f"{file_type} file={path} triangles={mesh.triangle_count} "
        f"volume_cm3={volume_cm3:.6f} source={source} parse_s={parsed_s:.6f} elapsed_s={elapsed_s:.6f}"
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Benchmark parse + volume for STL, OBJ and 3MF files.")
    parser.add_argument("files", nargs="+", help="Model files (.stl / .obj / .3mf).")
    parser.add_argument("--repeat", type=int, default=1, help="Parse each file N times.")
    args = parser.parse_args()

    for path in args.files:
        for _ in range(max(1, args.repeat)):
            _bench_file(path)


if __name__ == "__main__":
    main()
