import argparse
import asyncio
import functools
import io
import logging
import sys
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from PIL import Image

from download_manager import AssetTransferManager, http_fetch
from llava_runtime import (
    CompletionError,
    GenerationSession,
    LoadError,
    ModelLifecycleManager,
    TransferError,
)
from llava_runtime.loaders.llamacpp_loader import LlamaCppLoader
from model_library import ModelRegistry
from settings_manager import SettingsManager


def load_image_bytes(path: str) -> bytes:
    """Re-encode any image Pillow can read as full-quality JPEG."""
    with Image.open(path) as img:
        buf = io.BytesIO()
        img.convert("RGB").save(buf, format="JPEG", quality=100)
    return buf.getvalue()


def build_components(settings: SettingsManager) -> Tuple[ModelRegistry, AssetTransferManager,
                                                         ModelLifecycleManager, GenerationSession]:
    registry = ModelRegistry(settings.get("paths.models_directory", "./models"))
    fetcher = functools.partial(
        http_fetch,
        timeout=settings.get("download_settings.timeout_seconds", 30),
        chunk_size=settings.get("download_settings.chunk_size", 1024 * 1024),
    )
    transfers = AssetTransferManager(registry, fetcher=fetcher)
    lifecycle = ModelLifecycleManager(
        registry,
        LlamaCppLoader(settings.generate_config()).load,
        aux_asset=settings.get("paths.aux_asset") or None,
        system_prompt=settings.get("prompts.system_prompt"),
        turn_separator=settings.get("prompts.turn_separator"),
    )
    session = GenerationSession(
        lifecycle,
        max_completion_retries=settings.get("session.max_completion_retries", 1),
        human_marker=settings.get("prompts.human_marker"),
        assistant_marker=settings.get("prompts.assistant_marker"),
    )
    return registry, transfers, lifecycle, session


def _print_models(registry: ModelRegistry):
    for descriptor in registry.list():
        note = registry.check_device_fit(descriptor)
        line = f"{descriptor.id:24} {descriptor.presence.value:8} {descriptor.display_name}"
        print(f"{line}  ({note})" if note else line)


def _download(registry: ModelRegistry, transfers: AssetTransferManager, model_id: str) -> int:
    descriptor = registry.get(model_id)

    def _on_progress(fraction: float):
        print(f"\rDownloading {descriptor.display_name}: {fraction * 100:5.1f}%", end="", flush=True)

    try:
        transfers.start(descriptor, on_progress=_on_progress)
    except TransferError as e:
        print(f"Download unavailable: {e}", file=sys.stderr)
        return 1
    job = transfers.wait(model_id)
    print()
    if job.error_message:
        print(f"Download failed: {job.error_message}", file=sys.stderr)
        return 1
    print(f"Saved to {registry.locate(model_id)}")
    return 0


# Return to column 0 and erase the line
CLEAR_LINE = "\r\033[K"


async def _chat(session: GenerationSession, prompt: Optional[str], image: Optional[bytes]) -> int:
    session.register_callback("on_fragment", lambda s: print(s, end="", flush=True))

    async def _turn(text: str, image: Optional[bytes]):
        print("Assistant> ", end="", flush=True)
        try:
            reply = await session.submit_turn(text, image)
        except (CompletionError, LoadError) as e:
            print(f"\n[Error] {e}")
            return
        if reply.diagnostic:
            print(f"{CLEAR_LINE}Assistant> {reply.text}")
        else:
            print()

    if prompt:
        await _turn(prompt, image)
        return 0

    print("Starting interactive chat. Type '/image <path>' to attach a picture, "
          "'/reset' to start over, 'exit' or 'quit' to leave.")
    attached = image
    while True:
        try:
            user = (await asyncio.to_thread(input, "You> ")).strip()
        except (EOFError, KeyboardInterrupt):
            print("\nExiting.")
            break
        if user.lower() in {"exit", "quit"}:
            print("Goodbye!")
            break
        if not user:
            continue
        if user == "/reset":
            attached = None
            try:
                await session.reset()
            except LoadError as e:
                print(f"[Error] Conversation cleared but the model could not be reloaded: {e}")
                continue
            print("Conversation cleared.")
            continue
        if user.startswith("/image "):
            try:
                attached = load_image_bytes(user[len("/image "):].strip())
                print("Image attached to your next message.")
            except OSError as e:
                print(f"[Error] Could not read image: {e}")
            continue
        await _turn(user, attached)
        attached = None
    return 0


def parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Chat with a local LLaVA GGUF model. Downloads, loads and resets the model as needed.")
    p.add_argument("--settings", default="settings.json", help="Settings file (default: settings.json)")
    p.add_argument("--list", action="store_true", help="List known models and whether they are downloaded.")
    p.add_argument("--download", metavar="MODEL_ID", help="Download a model from the catalog.")
    p.add_argument("--model", metavar="MODEL_ID", help="Model to chat with.")
    p.add_argument("--prompt", help="Single prompt to answer. If omitted, starts interactive chat mode.")
    p.add_argument("--image", help="Image to send with the first message.")
    p.add_argument("--reset-settings", action="store_true", help="Restore default settings and save them.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p.parse_args(argv)


def main(argv: List[str]) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_dotenv("HUGGINGFACE.env")

    settings = SettingsManager(args.settings)
    if args.reset_settings:
        if not settings.reset_to_defaults():
            print(f"Could not write {args.settings}", file=sys.stderr)
            return 1
        print(f"Settings restored to defaults in {args.settings}")
        return 0

    registry, transfers, lifecycle, session = build_components(settings)

    if args.list:
        _print_models(registry)
        return 0

    if args.download:
        try:
            return _download(registry, transfers, args.download)
        except KeyError as e:
            print(e.args[0], file=sys.stderr)
            return 2

    if not args.model:
        print("Please pass --model MODEL_ID (see --list), or --download MODEL_ID first.", file=sys.stderr)
        return 2

    image = None
    if args.image:
        try:
            image = load_image_bytes(args.image)
        except OSError as e:
            print(f"Could not read image: {e}", file=sys.stderr)
            return 2

    try:
        lifecycle.select(registry.get(args.model))
        session.engine = lifecycle.ensure()
    except KeyError as e:
        print(e.args[0], file=sys.stderr)
        return 2
    except LoadError as e:
        print(f"Model not ready: {e}", file=sys.stderr)
        return 1

    return asyncio.run(_chat(session, args.prompt, image))


def cli():
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":
    cli()
