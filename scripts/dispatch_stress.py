#!/usr/bin/env python3
"""Concurrent HTTP stress test for the model gateway.

Fires many transcription requests at once to check that a cold model is
loaded a single time and that every request is served.

Usage:
    python scripts/dispatch_stress.py --url http://localhost:8000 --concurrency 20
    python scripts/dispatch_stress.py --wav samples/hello.wav --language en

Dependencies:
    pip install -e ".[scripts]"
"""

import argparse
import asyncio
import os
import sys
import time
from pathlib import Path

import httpx
import numpy as np
import soundfile as sf
from rich.console import Console
from rich.table import Table

SAMPLE_RATE = 16000


def wav_to_pcm16(wav_path: Path) -> bytes:
    """Load a 16kHz mono WAV as PCM16 bytes."""
    audio, sr = sf.read(str(wav_path), dtype="float32", always_2d=False)

    if sr != SAMPLE_RATE:
        raise ValueError(f"{wav_path} sample rate is {sr}, expected {SAMPLE_RATE}")
    if audio.ndim != 1:
        raise ValueError(f"{wav_path} must be mono")

    pcm = np.clip(audio, -1.0, 1.0)
    return (pcm * 32767.0).astype("<i2").tobytes()


def silence(seconds: float) -> bytes:
    return bytes(int(SAMPLE_RATE * seconds) * 2)


async def run_one(
    client: httpx.AsyncClient,
    index: int,
    body: bytes,
    params: dict,
) -> tuple[int, int, float, str]:
    """Send one transcription request; returns (index, status, seconds, text)."""
    start = time.perf_counter()
    response = await client.post("/v1/audio/transcriptions", params=params, content=body)
    elapsed = time.perf_counter() - start
    if response.status_code == 200:
        text = response.json()["text"]
    else:
        text = response.json().get("detail", response.text)
    return index, response.status_code, elapsed, text


async def main() -> None:
    ap = argparse.ArgumentParser(description="Model gateway stress test")
    ap.add_argument("--url", default="http://localhost:8000", help="Gateway base URL")
    ap.add_argument("--concurrency", type=int, default=20, help="Number of parallel requests")
    ap.add_argument("--wav", type=Path, help="16kHz mono WAV to send (default: 1s of silence)")
    ap.add_argument("--language", default="en", help="Language tag sent with every request")
    ap.add_argument("--model", help="Model id (default: the gateway's STT default)")
    ap.add_argument("--timeout", type=float, default=300.0, help="Per request timeout in seconds")
    args = ap.parse_args()

    body = wav_to_pcm16(args.wav) if args.wav else silence(1.0)
    params = {"language": args.language}
    if args.model:
        params["model"] = args.model

    headers = {}
    if api_key := os.environ.get("API_KEY"):
        headers["Authorization"] = f"Bearer {api_key}"

    console = Console()
    console.print(f"Running {args.concurrency} concurrent requests against {args.url}")

    async with httpx.AsyncClient(base_url=args.url, headers=headers, timeout=args.timeout) as client:
        before = (await client.get("/api/ps")).json()["models"]
        start = time.perf_counter()
        results = await asyncio.gather(
            *(run_one(client, i, body, params) for i in range(args.concurrency))
        )
        wall = time.perf_counter() - start
        after = (await client.get("/api/ps")).json()["models"]

    table = Table(title="Transcription requests")
    table.add_column("#", justify="right")
    table.add_column("Status")
    table.add_column("Latency", justify="right")
    table.add_column("Result", overflow="fold")

    failed = 0
    for index, status, elapsed, text in sorted(results):
        ok = status == 200
        failed += not ok
        style = "green" if ok else "red"
        table.add_row(str(index), f"[{style}]{status}[/{style}]", f"{elapsed * 1000:.0f}ms", text)
    console.print(table)

    latencies = sorted(elapsed for _, status, elapsed, _ in results if status == 200)
    if latencies:
        p50 = latencies[len(latencies) // 2]
        console.print(f"p50={p50 * 1000:.0f}ms  max={latencies[-1] * 1000:.0f}ms  wall={wall:.2f}s")
    console.print(f"Loaded before: {[m['model_id'] for m in before]}")
    console.print(f"Loaded after:  {[m['model_id'] for m in after]}")
    console.print(f"{args.concurrency - failed} passed, {failed} failed")

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
