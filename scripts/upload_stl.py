import argparse
import base64
import hashlib
import json
import math
import os
import statistics
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

import httpx

# base64 inflates by 4/3; keep encoded chunks under the server's 2 MiB body cap.
DEFAULT_CHUNK_SIZE = 1024 * 1024


def _chunk_bytes(data: bytes, chunk_size: int) -> list[bytes]:
    return [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)]


def _post(client: httpx.Client, url: str, payload: dict, retries: int) -> dict:
    for attempt in range(retries + 1):
        resp = client.post(url, json=payload, timeout=60.0)
        if resp.status_code < 500 or attempt == retries:
            break
        time.sleep(0.5 * 2**attempt)
    if resp.status_code >= 400:
        raise RuntimeError(f"{url} failed with {resp.status_code}: {resp.text}")
    return resp.json()


def upload_file(
    client: httpx.Client,
    base_url: str,
    file_name: str,
    data: bytes,
    chunk_size: int,
    workers: int,
    retries: int,
) -> dict:
    started = time.perf_counter()
    chunks = _chunk_bytes(data, chunk_size)
    total_chunks = len(chunks)
    checksum = hashlib.sha256(data).hexdigest()

    init = _post(
        client,
        f"{base_url}/upload-init",
        {"fileName": file_name, "totalChunks": total_chunks, "fileSize": len(data), "checksum": checksum},
        retries,
    )
    upload_id = init["uploadId"]

    latencies_ms: list[float] = []

    def _upload_chunk(index: int, chunk: bytes) -> None:
        t0 = time.perf_counter()
        _post(
            client,
            f"{base_url}/upload-chunk",
            {
                "uploadId": upload_id,
                "chunkIndex": index,
                "totalChunks": total_chunks,
                "chunkData": base64.b64encode(chunk).decode("ascii"),
                "fileName": file_name,
            },
            retries,
        )
        latencies_ms.append((time.perf_counter() - t0) * 1000)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_upload_chunk, idx, chunk) for idx, chunk in enumerate(chunks)]
        for fut in as_completed(futures):
            fut.result()

    complete = _post(
        client,
        f"{base_url}/upload-complete",
        {"uploadId": upload_id, "fileName": file_name, "totalChunks": total_chunks, "checksum": checksum},
        retries,
    )
    return {
        "upload_id": upload_id,
        "path": complete["path"],
        "url": complete["url"],
        "file_size": complete["fileSize"],
        "chunk_count": total_chunks,
        "total_ms": round((time.perf_counter() - started) * 1000, 2),
        "chunk_latency_ms_avg": round(statistics.mean(latencies_ms), 2) if latencies_ms else 0.0,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Upload an STL file through the chunked upload API.")
    parser.add_argument("path", help="File to upload")
    parser.add_argument("--base-url", default=os.getenv("MESH_UPLOAD_BASE_URL", "http://127.0.0.1:8000"))
    parser.add_argument("--chunk-size-bytes", type=int, default=DEFAULT_CHUNK_SIZE, help="Raw bytes per chunk")
    parser.add_argument("--workers", type=int, default=4, help="Parallel chunk uploads")
    parser.add_argument("--retries", type=int, default=2, help="Retries per request on 5xx")
    parser.add_argument("--output", default="", help="Optional path to write the JSON result")
    args = parser.parse_args()

    with open(args.path, "rb") as f:
        data = f.read()
    file_name = os.path.basename(args.path)
    if not data:
        print(f"[FAIL] {file_name} is empty.")
        return 1
    print(f"Uploading {file_name} ({len(data)} bytes, {math.ceil(len(data) / args.chunk_size_bytes)} chunks)")

    with httpx.Client() as client:
        result = upload_file(
            client,
            args.base_url.rstrip("/"),
            file_name,
            data,
            args.chunk_size_bytes,
            max(1, args.workers),
            max(0, args.retries),
        )

    for key, value in result.items():
        print(f"- {key}: {value}")

    if args.output:
        os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(result, f, indent=2)
        print(f"\nWrote result to {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
