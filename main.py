#!/usr/bin/env python3
"""
Split Inference Node
====================

[NEURAL] Запуск одной половины модели, разрезанной между двумя пирами:
- Генерирует или загружает криптографическую идентичность
- Вторая половина слушает TCP порт и генерирует токены
- Первая половина подключается, назначает роли и гонит активации

Использование:
    python main.py --role second [--port PORT]
    python main.py --role first --connect HOST:PORT [--steps N]

Примеры:
    # Вторая половина (слои split+1..N-1, mock engine)
    python main.py --role second --port 9470

    # Первая половина (слои 0..split), 8 шагов генерации
    python main.py --role first --connect 127.0.0.1:9470 --steps 8
"""

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Tuple

import numpy as np

# Загрузка переменных окружения из .env файла
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass  # python-dotenv не установлен

from config import config, ModelConfig
from core.logger import setup_logging
from core.transport import Crypto
from cortex.distributed import (
    MockInferenceEngine,
    SplitInferenceNode,
    InferenceError,
)

logger = logging.getLogger(__name__)


def load_or_create_identity(identity_file: str) -> Crypto:
    """
    Загрузить или создать криптографическую идентичность узла.
    """
    path = Path(identity_file)
    existed = path.exists()
    crypto = Crypto.load_or_create(identity_file)
    if existed:
        logger.info(f"[IDENTITY] Loaded: {crypto.node_id[:16]}...")
    else:
        logger.info(f"[IDENTITY] Created: {crypto.node_id[:16]}... (saved to {identity_file})")
    return crypto


def parse_address(address: str) -> Tuple[str, int]:
    """Разобрать HOST:PORT (порт по умолчанию из конфигурации)."""
    address = address.strip()
    if ":" in address:
        host, port_str = address.rsplit(":", 1)
        return host, int(port_str)
    return address, config.network.port


async def run_first_half(node: SplitInferenceNode, args: argparse.Namespace) -> None:
    host, port = parse_address(args.connect)
    await node.connect(host, port)
    node.coordinator.configure_first_half()
    print(node.coordinator.info())

    rng = np.random.default_rng(args.seed)
    hidden_dim = node.coordinator.hidden_dim
    activations = [
        rng.standard_normal((1, args.seq_len, hidden_dim)).astype(np.float16)
        for _ in range(args.steps)
    ]

    try:
        tokens = await node.generate(list(range(args.seq_len)), activations, timeout=args.timeout)
    except (InferenceError, asyncio.TimeoutError) as e:
        logger.error(f"[MAIN] Generation failed: {e!r}")
        return

    print("Tokens:", " ".join(token.text for token in tokens))


async def main() -> None:
    """
    Главная функция - точка входа.
    """
    parser = argparse.ArgumentParser(
        description="Split Inference Node (pipeline parallel, two peers)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Terminal 1: second half with mock engine
  python main.py --role second --port 9470

  # Terminal 2: first half, drives generation
  python main.py --role first --connect 127.0.0.1:9470 --steps 8
""",
    )
    parser.add_argument(
        "--role", "-r",
        choices=["first", "second"],
        required=True,
        help="Which half of the model this node runs",
    )
    parser.add_argument(
        "--host", "-H",
        type=str,
        default=config.network.host,
        help=f"Host to bind to (default: {config.network.host})",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=config.network.port,
        help=f"Port to listen on (default: {config.network.port})",
    )
    parser.add_argument(
        "--connect", "-c",
        type=str,
        default=None,
        help="Peer address HOST:PORT (required for --role first)",
    )
    parser.add_argument(
        "--total-layers",
        type=int,
        default=config.model.total_layers,
        help=f"Total transformer layers (default: {config.model.total_layers})",
    )
    parser.add_argument(
        "--hidden-dim",
        type=int,
        default=config.model.hidden_dim,
        help=f"Hidden dimension (default: {config.model.hidden_dim})",
    )
    parser.add_argument(
        "--split-layer",
        type=int,
        default=None,
        help="Last layer of the first half (default: total_layers // 2)",
    )
    parser.add_argument(
        "--steps",
        type=int,
        default=4,
        help="Tokens to generate (first half only)",
    )
    parser.add_argument(
        "--seq-len",
        type=int,
        default=8,
        help="Sequence length of the generated activations",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=0,
        help="Random seed for demo activations",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for each token",
    )
    parser.add_argument(
        "--identity", "-i",
        type=str,
        default=config.crypto.identity_file,
        help=f"Identity file path (default: {config.crypto.identity_file})",
    )
    parser.add_argument(
        "--log-level", "-l",
        type=str,
        default=config.logging.level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    args = parser.parse_args()

    setup_logging(args.log_level, config.logging.format, config.logging.activity_buffer)

    if args.role == "first" and not args.connect:
        parser.error("--role first requires --connect HOST:PORT")

    try:
        model_config = ModelConfig(
            total_layers=args.total_layers,
            hidden_dim=args.hidden_dim,
            split_layer=args.split_layer,
        )
    except ValueError as e:
        parser.error(str(e))

    crypto = load_or_create_identity(args.identity)
    engine = MockInferenceEngine() if args.role == "second" else None
    node = SplitInferenceNode(crypto=crypto, engine=engine, model_config=model_config)
    node.start_maintenance()

    # Graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("[MAIN] Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    try:
        if args.role == "first":
            await run_first_half(node, args)
        else:
            port = await node.listen(args.host, args.port)
            logger.info(f"[MAIN] Second half waiting for peer on {args.host}:{port}. Press Ctrl+C to stop.")
            await shutdown_event.wait()
            print(node.coordinator.info())
    except OSError as e:
        logger.error(f"[MAIN] Network error: {e}")
    finally:
        await node.stop()
        logger.info("[MAIN] Shutdown complete")


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
