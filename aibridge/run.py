"""Command-line entry point: one cached chat completion or embedding."""

import asyncio
import logging
import sys

import hydra
from omegaconf import DictConfig, OmegaConf

from aibridge.bridge import AiBridge
from aibridge.errors import BridgeError

logger = logging.getLogger(__name__)


async def run_request(bridge: AiBridge, cfg: DictConfig) -> None:
    await bridge.setup()

    if cfg.mode == "embedding":
        result = await bridge.get_embedding(cfg.prompt, cache_group=cfg.get("cache_group"))
        print(f"\n📐 Embedding ({len(result.embedding)} dimensions) from {result.model}")
        print(f"   {result.embedding[:8]}{' ...' if len(result.embedding) > 8 else ''}")
        print(f"   tokens: {result.token.embedding}, cache: {result.token.cache}")
        return

    options = OmegaConf.to_container(cfg.options, resolve=True) if cfg.get("options") else {}
    listener = None
    if options.get("stream"):
        def listener(delta: str) -> None:
            print(delta, end="", flush=True)

    result = await bridge.get_chat_completion(
        cfg.prompt,
        options,
        stream_listener=listener,
        cache_group=cfg.get("cache_group"),
    )
    await bridge.drain()
    if listener is None:
        print(result.completion)
    print(
        f"\n\n📊 model: {result.model}, prompt tokens: {result.token.prompt}, "
        f"completion tokens: {result.token.completion}, cache: {result.token.cache}"
    )


@hydra.main(config_path="../configs", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    """Hydra-driven execution entry point for AiBridge."""
    logger.info("Configuration:\n%s", OmegaConf.to_yaml(cfg))

    if not cfg.get("prompt"):
        print("❌ Error: set a prompt, e.g. `aibridge prompt='Hello there'`.")
        sys.exit(1)

    try:
        bridge = AiBridge(cfg)
        asyncio.run(run_request(bridge, cfg))
    except BridgeError as exc:
        logger.error("Request failed: %s", exc)
        print(f"\n❌ {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
