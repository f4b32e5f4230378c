"""Show an outboard class computing checksums in the companion process."""

import argparse
import hashlib
import os
import pathlib
import sys
import time

SRC_PATH: str = str(pathlib.Path(__file__).resolve().parent.parent / "src")
MODULUS: int = 1_000_000_007


def _ensure_src_path(src_path: str) -> None:
    """Ensure ``src`` is importable in the current interpreter.

    :param src_path: Absolute path to the repository ``src`` directory.
    """
    exists: bool = src_path in sys.path
    if exists is False:
        sys.path.insert(0, src_path)


def _expected_checksum(rounds: int, item_count: int) -> int:
    """Compute the checksum locally for comparison.

    :param rounds: PBKDF2 rounds per item.
    :param item_count: Number of items.
    :returns: Checksum modulo ``MODULUS``.
    """
    checksum: int = 0
    for index in range(item_count):
        digest: bytes = hashlib.pbkdf2_hmac("sha256", f"item-{index}".encode(), b"outboard", rounds)
        checksum = (checksum * 31 + int.from_bytes(digest[:8], "big")) % MODULUS
    return checksum


def _parse_args() -> argparse.Namespace:
    """Parse CLI arguments.

    :returns: Parsed CLI arguments.
    """
    parser = argparse.ArgumentParser(
        description="Run a checksum workload in the outboard companion process and check it locally."
    )
    parser.add_argument("--items", type=int, default=6, help="Items to hash.")
    parser.add_argument("--rounds", type=int, default=16_000, help="PBKDF2 rounds per item.")
    parser.add_argument("--debug", action="store_true", help="Log companion requests to stderr.")
    return parser.parse_args()


def main() -> int:
    """Run the demonstration.

    :returns: Process exit code where ``0`` indicates success.
    """
    args: argparse.Namespace = _parse_args()
    items: int = int(args.items)
    rounds: int = int(args.rounds)
    if items < 1:
        print("items must be >= 1")
        return 1
    if rounds < 1:
        print("rounds must be >= 1")
        return 1

    _ensure_src_path(SRC_PATH)
    import outboard

    outboard.configure(debug=bool(args.debug))

    class Checksums(outboard.Core):
        hashlib = outboard.dependency()
        os = outboard.dependency()
        MODULUS = outboard.constant(MODULUS)
        checksum = outboard.function(
            """
            def checksum(rounds, item_count):
                total = 0
                for index in range(item_count):
                    digest = hashlib.pbkdf2_hmac("sha256", f"item-{index}".encode(), b"outboard", rounds)
                    total = (total * 31 + int.from_bytes(digest[:8], "big")) % MODULUS
                return total
            """
        )
        worker_pid = outboard.function("lambda: os.getpid()")

    print("Outboard Checksum Demo")
    print(f"python={sys.version.split()[0]} items={items} rounds={rounds}")

    started: float = time.perf_counter()
    try:
        checksums = Checksums()
        remote_checksum: object = checksums.checksum(rounds, items)
        remote_pid: object = checksums.worker_pid()
        with checksums.evaluation_context() as scratch:
            scratch.evaluate("history = []")
            scratch.evaluate(f"history.append(checksum({rounds}, 1))")
            history: object = scratch.evaluate("history")
    except outboard.OutboardError as exc:
        print(f"DEMO RESULT: FAIL ({type(exc).__name__}: {exc})")
        return 1
    finally:
        outboard.shutdown_companion()
    elapsed: float = time.perf_counter() - started

    local_checksum: int = _expected_checksum(rounds, items)
    print(f"  companion_pid={remote_pid} host_pid={os.getpid()}")
    print(f"  remote_checksum={remote_checksum} local_checksum={local_checksum}")
    print(f"  evaluation_history={history}")
    print(f"  elapsed_seconds={elapsed:.3f}")

    if remote_checksum == local_checksum and remote_pid != os.getpid():
        print("DEMO RESULT: PASS")
        return 0
    print("DEMO RESULT: FAIL")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
