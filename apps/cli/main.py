"""`llmkit`: local chat, embedding and vector-store CLI.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Sequence

from apps.cli.chat_repl import chat_repl
from apps.cli.output import format_table, print_json
from llmkit.engine.embedding import EmbeddingSession
from llmkit.engine.errors import LlmkitError
from llmkit.engine.module import BackendConfig
from llmkit.engine.session import GenerationSession, SessionConfig
from llmkit.engine.vector_store import TextVectorStore


def _add_backend_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--model-type", default="auto", help="Model family (default: auto, from the path)")
    p.add_argument("--device", default="cpu", help="Device: cpu|cuda|auto (default: %(default)s)")
    p.add_argument("--threads", type=int, default=4, help="CPU threads (default: %(default)s)")
    p.add_argument("--precision", default="low", choices=["low", "normal", "high"])
    p.add_argument("--memory", default="low", choices=["low", "normal", "high"])


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="llmkit", description="Chat and embeddings over exported models")
    p.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: %(default)s)",
    )

    sub = p.add_subparsers(dest="command")

    chat = sub.add_parser("chat", help="Interactive chat with a local model")
    chat.add_argument("--model", required=True, help="Model directory or single-file artifact")
    _add_backend_args(chat)
    chat.add_argument("--max-new-tokens", type=int, default=1024, help="Per-response decode cap")
    chat.add_argument("--disk-embedding", action="store_true", help="Read token embeddings from embeddings_bf16.bin")
    chat.add_argument("--no-warmup", action="store_true", help="Skip the warmup forward call")
    chat.add_argument("--query", default=None, help="Answer one query and exit instead of starting the REPL")

    embed = sub.add_parser("embed", help="Embed texts; prints the L2 distance for two texts")
    embed.add_argument("--model", required=True, help="Embedding model artifact")
    _add_backend_args(embed)
    embed.add_argument("texts", nargs="+", help="Texts to embed")
    embed.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    store = sub.add_parser("store", help="Build, query or benchmark a text/vector store")
    store_sub = store.add_subparsers(dest="store_cmd", required=True)

    build = store_sub.add_parser("build", help="Embed texts and save a store")
    build.add_argument("--model", required=True, help="Embedding model artifact")
    _add_backend_args(build)
    build.add_argument("--out", required=True, help="Output store file")
    build.add_argument("--input", default=None, help="Text file, one entry per line")
    build.add_argument("texts", nargs="*", help="Texts to add")
    build.add_argument("--append", action="store_true", help="Add to an existing store at --out")

    search = store_sub.add_parser("search", help="Nearest stored texts for a query")
    search.add_argument("--model", required=True, help="Embedding model artifact")
    _add_backend_args(search)
    search.add_argument("--store", required=True, help="Store file")
    search.add_argument("query", help="Query text")
    search.add_argument("-k", type=int, default=3, help="Number of results (default: %(default)s)")
    search.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    bench = store_sub.add_parser("bench", help="Time one search over random vectors")
    bench.add_argument("-n", type=int, default=50000, help="Vectors (default: %(default)s)")
    bench.add_argument("-d", type=int, default=1024, help="Dimensions (default: %(default)s)")
    bench.add_argument("--top", type=int, default=5, help="Nearest entries to print (default: %(default)s)")

    return p


def _backend(args: argparse.Namespace) -> BackendConfig:
    return BackendConfig(
        device=args.device,
        num_threads=args.threads,
        precision=args.precision,
        memory=args.memory,
    )


def _load_embedder(args: argparse.Namespace) -> EmbeddingSession:
    embedder = EmbeddingSession.create(args.model, args.model_type, backend_config=_backend(args))
    embedder.load(args.model)
    return embedder


def _read_texts(args: argparse.Namespace) -> list[str]:
    texts = list(args.texts or [])
    if args.input:
        with open(args.input, "r", encoding="utf-8") as f:
            texts.extend(line.rstrip("\n") for line in f if line.strip())
    return texts


def _cmd_chat(args: argparse.Namespace) -> int:
    session = GenerationSession.create(
        args.model,
        args.model_type,
        backend_config=_backend(args),
        config=SessionConfig(max_new_tokens=args.max_new_tokens, disk_embedding=args.disk_embedding),
    )
    session.load(args.model)
    if not args.no_warmup:
        session.warmup()
    if args.query is not None:
        session.respond(args.query, sink=sys.stdout)
        return 0
    return chat_repl(session)


def _cmd_embed(args: argparse.Namespace) -> int:
    embedder = _load_embedder(args)
    vectors = [embedder.embed(text) for text in args.texts]
    distance = EmbeddingSession.distance(vectors[0], vectors[1]) if len(vectors) == 2 else None
    if args.json:
        obj: dict = {"embeddings": [v.reshape(-1).tolist() for v in vectors]}
        if distance is not None:
            obj["distance"] = distance
        print_json(obj)
        return 0
    rows = []
    for text, vec in zip(args.texts, vectors):
        head = ", ".join(f"{x:.4f}" for x in vec.reshape(-1)[:4].tolist())
        rows.append([text, "x".join(str(s) for s in vec.shape), f"[{head}, ...]"])
    print(format_table(["text", "shape", "values"], rows))
    if distance is not None:
        print(f"\ndistance: {distance:.6f}")
    return 0


def _cmd_store(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    if args.store_cmd == "bench":
        nearest = TextVectorStore().bench(n=args.n, d=args.d, top=args.top)
        print(format_table(["index", "distance"], [[str(i), f"{d:.6f}"] for i, d in nearest]))
        return 0

    embedder = _load_embedder(args)
    if args.store_cmd == "build":
        texts = _read_texts(args)
        if not texts:
            parser.error("store build: provide texts or --input")
        store = TextVectorStore(embedder)
        if args.append and os.path.isfile(args.out):
            existing = TextVectorStore.load(args.out, embedder)
            if existing is not None:
                store = existing
        store.add_all(texts)
        store.save(args.out)
        print(f"saved {len(store)} texts to {args.out}")
        return 0

    if args.store_cmd == "search":
        store = TextVectorStore.load(args.store, embedder)
        if store is None:
            print(f"error: store {args.store!r} holds no texts", file=sys.stderr)
            return 1
        hits = store.search_with_scores(args.query, args.k)
        if args.json:
            print_json({"results": [{"text": t, "distance": d} for t, d in hits]})
            return 0
        print(format_table(["distance", "text"], [[f"{d:.6f}", t] for t, d in hits]))
        return 0

    parser.error(f"Unknown store subcommand: {args.store_cmd!r}")
    return 2


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    command = args.command
    if not command:
        parser.print_help()
        return 2

    try:
        if command == "chat":
            return _cmd_chat(args)
        if command == "embed":
            return _cmd_embed(args)
        if command == "store":
            return _cmd_store(args, parser)
    except LlmkitError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    parser.error(f"Unknown command: {command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
