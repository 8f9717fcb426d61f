import argparse
import asyncio
import json
import sys
from pathlib import Path

from docembed import config
from docembed.client.facade import EmbeddingClient, as_passage
from docembed.embeddings.types import ModelSelector, ProgressEvent
from docembed.errors import EmbeddingError
from docembed.drafts.storage import SharedStorage
from docembed.drafts.store import DraftStore
from docembed.text.markdown import chunk_document, extract_excerpt, infer_title, prepare_passage_text


def _print_progress(event: ProgressEvent):
    print(f"   [{event.phase}] {event.label} ({round(event.progress * 100)}%)")


async def run_preload(client: EmbeddingClient, selector: ModelSelector) -> int:
    print("🔄 Pre-loading embedding model...\n")
    status = await client.init(selector, on_progress=_print_progress)
    print(f"\n✅ Model ready: {status.selector.model_id} ({status.dimensions} dims)")
    return 0


async def run_embed(client: EmbeddingClient, selector: ModelSelector, args) -> int:
    if args.file:
        path = Path(args.file)
        markdown = path.read_text(encoding="utf-8")
        post_id = args.post_id or path.stem
        print(f"📄 {infer_title(markdown)}: {extract_excerpt(markdown)}")

        if args.chunks:
            texts = [as_passage(chunk) for chunk in chunk_document(markdown)]
            print(f"🔍 {path.name}: {len(texts)} chunks")
            vectors = await client.embed_many(texts, model=selector)
        else:
            text = as_passage(prepare_passage_text(infer_title(markdown), markdown))
            vectors = [await client.embed_post(post_id, text, model=selector, on_progress=_print_progress)]
    elif args.query:
        vectors = [await client.embed_query(args.text, model=selector, on_progress=_print_progress)]
    else:
        vectors = [await client.embed_post(args.post_id or "cli", args.text, model=selector, on_progress=_print_progress)]

    print(f"\n✅ {len(vectors)} embedding(s), {len(vectors[0])} dims")

    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            json.dump(vectors, f)
        print(f"💾 Saved to {args.out}")
    return 0


async def run_status(client: EmbeddingClient) -> int:
    await client.capability()
    status = await client.status()
    print(json.dumps(status.to_dict(), indent=2))
    return 0


def run_draft(args) -> int:
    storage = SharedStorage(config.DRAFT_STORAGE_PATH)
    store = DraftStore(storage.area())

    if args.action == "save":
        store.save_draft(Path(args.file).read_text(encoding="utf-8"))
    elif args.action == "clear":
        store.clear_draft()
        print("🗑️  Draft cleared")
        return 0

    if not store.check_for_draft():
        print("📭 No draft")
        return 0
    print(f"📝 Draft found: {store.preview or '(no heading)'}")
    return 0


async def _dispatch(args) -> int:
    client = EmbeddingClient(mode=args.mode)
    selector = ModelSelector.of(args.model, args.device)
    try:
        if args.command == "preload":
            return await run_preload(client, selector)
        if args.command == "embed":
            return await run_embed(client, selector, args)
        return await run_status(client)
    except EmbeddingError as exc:
        print(f"\n❌ {type(exc).__name__}: {exc}")
        return 1
    finally:
        await client.aclose()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Document embeddings: local model or embeddings server")
    parser.add_argument("--mode", default=config.EMBEDDINGS_MODE, choices=["auto", "server", "local"])
    parser.add_argument("--model", default=config.MODEL_ID)
    parser.add_argument("--device", default=config.DEFAULT_DEVICE, choices=["webgpu", "wasm"])

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("preload", help="Download and load the model")
    sub.add_parser("status", help="Print model status as JSON")

    embed = sub.add_parser("embed", help="Embed a text or a markdown file")
    source = embed.add_mutually_exclusive_group(required=True)
    source.add_argument("--text")
    source.add_argument("--file", help="Markdown file (title inferred from its first heading)")
    embed.add_argument("--post-id", default=None)
    embed.add_argument("--query", action="store_true", help="Embed --text as a search query")
    embed.add_argument("--chunks", action="store_true", help="Split --file into chunks and embed each")
    embed.add_argument("--out", default=None, help="Write vectors as JSON")

    draft = sub.add_parser("draft", help="Inspect or edit the shared draft slot")
    draft.add_argument("action", choices=["show", "save", "clear"])
    draft.add_argument("--file", help="Markdown file to store (for save)")

    serve = sub.add_parser("serve", help="Run the embeddings API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    args = parser.parse_args(argv)

    if args.command == "draft":
        if args.action == "save" and not args.file:
            parser.error("draft save needs --file")
        return run_draft(args)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("backend.app:app", host=args.host, port=args.port)
        return 0

    return asyncio.run(_dispatch(args))


if __name__ == "__main__":
    sys.exit(main())

# PRE-LOAD THE MODEL (downloads on first run)
# !python main.py --mode local preload

# EMBED A MARKDOWN POST, ONE VECTOR PER CHUNK
# !python main.py embed --file posts/hello.md --chunks --out vectors.json
