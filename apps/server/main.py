"""llmkit inference server entrypoint (FastAPI).

Example:
    python -m apps.server.main --model models/qwen-1.8b --host 0.0.0.0 --port 8787
    python -m apps.server.main --embedding-model models/bge/bge.pt --store store.pt
"""

from __future__ import annotations

import argparse
import os
import time

from apps.server.app import create_app
from llmkit.engine.embedding import EmbeddingSession
from llmkit.engine.module import BackendConfig
from llmkit.engine.session import GenerationSession, SessionConfig
from llmkit.engine.vector_store import TextVectorStore


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="llmkit inference server")
    p.add_argument("--model", default=None, help="Chat model directory or single-file artifact")
    p.add_argument("--model-type", default="auto", help="Model family (default: auto, from the path)")
    p.add_argument("--embedding-model", default=None, help="Embedding model artifact (enables /v1/embeddings)")
    p.add_argument(
        "--store",
        default=None,
        help="Vector store file to load at startup (requires --embedding-model)",
    )
    p.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    p.add_argument("--port", type=int, default=8787, help="Bind port (default: 8787)")

    p.add_argument("--device", default="cpu", help="Device: cpu|cuda|auto (default: cpu)")
    p.add_argument("--threads", type=int, default=4, help="CPU threads (default: 4)")
    p.add_argument("--precision", default="low", choices=["low", "normal", "high"])
    p.add_argument("--memory", default="low", choices=["low", "normal", "high"])
    p.add_argument("--max-new-tokens", type=int, default=1024, help="Per-response decode cap (default: 1024)")
    p.add_argument("--disk-embedding", action="store_true", help="Read token embeddings from embeddings_bf16.bin")

    warmup_group = p.add_mutually_exclusive_group()
    warmup_group.add_argument(
        "--warmup",
        dest="warmup",
        action="store_true",
        help="Run one warmup forward call after model load (default: on)",
    )
    warmup_group.add_argument(
        "--no-warmup",
        dest="warmup",
        action="store_false",
        help="Disable startup warmup",
    )
    p.set_defaults(warmup=True)
    p.add_argument("--reload", action="store_true", help="Enable uvicorn reload (dev only)")
    return p.parse_args()


def main() -> None:
    args = _parse_args()
    if not args.model and not args.embedding_model:
        raise SystemExit("At least one of --model or --embedding-model is required.")
    if args.store and not args.embedding_model:
        raise SystemExit("--store requires --embedding-model.")

    backend = BackendConfig(
        device=args.device,
        num_threads=args.threads,
        precision=args.precision,
        memory=args.memory,
    )

    session: GenerationSession | None = None
    if args.model:
        print(
            "[server] loading model... "
            f"model={args.model!r} type={args.model_type!r} device={args.device!r} precision={args.precision!r}",
            flush=True,
        )
        session = GenerationSession.create(
            args.model,
            args.model_type,
            backend_config=backend,
            config=SessionConfig(max_new_tokens=args.max_new_tokens, disk_embedding=args.disk_embedding),
        )
        session.load(args.model)
        print(f"[server] model loaded (family={session.family.name})", flush=True)

        if bool(args.warmup):
            t0 = time.time()
            session.warmup()
            print(f"[warmup] done in {time.time() - t0:.2f}s", flush=True)
        else:
            print("[server] warmup disabled", flush=True)

    embedder: EmbeddingSession | None = None
    store: TextVectorStore | None = None
    if args.embedding_model:
        print(f"[server] loading embedding model... model={args.embedding_model!r}", flush=True)
        embedder = EmbeddingSession.create(args.embedding_model, backend_config=backend)
        embedder.load(args.embedding_model)
        print("[server] embedding model loaded", flush=True)

        store = TextVectorStore(embedder)
        if args.store and os.path.isfile(args.store):
            loaded = TextVectorStore.load(args.store, embedder)
            if loaded is not None:
                store = loaded
            print(f"[server] vector store: {len(store)} texts from {args.store!r}", flush=True)

    model_path = args.model or args.embedding_model
    model_id = os.path.basename(model_path.rstrip("/")) or "llmkit"
    app = create_app(session=session, model_id=model_id, embedder=embedder, store=store)

    try:
        import uvicorn
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("uvicorn is required to run the server.") from exc

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
