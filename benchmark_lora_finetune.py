from __future__ import annotations

import asyncio
import math
import os
import time

import torch

from loralab import TrainingEngine, export_adapter, load_hf_model


def _disable_torchvision() -> None:
    os.environ.setdefault("TRANSFORMERS_NO_TORCHVISION", "1")
    try:
        from transformers.utils import import_utils
    except Exception:
        return
    import_utils._torchvision_available = False
    import_utils._torchvision_version = "N/A"


def _read_rss_kb() -> int:
    try:
        with open("/proc/self/status", encoding="utf-8") as handle:
            for line in handle:
                if line.startswith("VmRSS:"):
                    return int(line.split()[1])
    except FileNotFoundError:
        pass
    return 0


def _build_tokens(tokenizer, max_tokens: int) -> list[int]:
    from datasets import load_dataset

    dataset = load_dataset("wikitext", "wikitext-2-raw-v1", split="train[:1%]")
    text = "\n".join(line for line in dataset["text"] if line.strip())
    return list(tokenizer.encode(text))[:max_tokens]


async def _run_strategy(
    strategy: str,
    model_name: str,
    tokens: list[int],
    training_config: dict[str, object],
) -> dict[str, float]:
    torch.manual_seed(0)
    provider = load_hf_model(model_name)
    rank_updates: list[dict[str, object]] = []
    start_rss = _read_rss_kb()
    peak_rss = start_rss

    def on_progress(data: dict[str, object]) -> None:
        nonlocal peak_rss
        print(f"{strategy} step={data['step']} loss={data['loss']:.4f} rank={data['currentRank']}")
        rss_kb = _read_rss_kb()
        if rss_kb:
            peak_rss = max(peak_rss, rss_kb)

    config = dict(training_config, rank_strategy=strategy, model_name=model_name)
    start = time.perf_counter()
    async with TrainingEngine() as engine:
        engine.on("training_progress", on_progress)
        engine.on("rank_updated", rank_updates.append)
        engine.on("error", lambda data: print(f"{strategy} error: {data['message']}"))
        await engine.start_training(provider, {"tokens": tokens}, config)
        result = await engine.wait_for("training_completed")
    elapsed = time.perf_counter() - start

    adapter_bytes = export_adapter(
        result["adapterData"],
        {
            "model_name": model_name,
            "training_steps": result["totalSteps"],
            "final_loss": result["finalLoss"],
        },
    )
    return {
        "final_loss": float(result["finalLoss"]),
        "avg_loss": float(result["averageLoss"]),
        "perplexity": float(math.exp(min(result["averageLoss"], 50.0))),
        "elapsed_s": elapsed,
        "tokens_per_s": float(result["averageThroughput"]),
        "final_rank": float(result["adapterData"]["rank"]),
        "rank_changes": float(len(rank_updates)),
        "peak_rss_mb": float(peak_rss) / 1024.0,
        "adapter_mb": float(len(adapter_bytes)) / (1024.0 * 1024.0),
    }


def main() -> None:
    torch.manual_seed(0)

    model_name = os.environ.get("LORALAB_BENCH_MODEL", "HuggingFaceTB/SmolLM-135M")
    training_config = {
        "adapter": {"rank": 8, "alpha": 16.0, "target_modules": ["q_proj", "v_proj"], "max_rank": 32},
        "batch_size": 4,
        "sequence_length": 128,
        "max_steps": 200,
        "learning_rate": 5e-4,
        "weight_decay": 0.01,
    }

    _disable_torchvision()
    provider = load_hf_model(model_name)
    tokens = _build_tokens(provider.tokenizer, max_tokens=200_000)

    strategies = ["fixed", "progressive", "adaptive", "hardware_aware"]
    results: dict[str, dict[str, float]] = {}
    for strategy in strategies:
        results[strategy] = asyncio.run(_run_strategy(strategy, model_name, tokens, training_config))

    print("\nSummary")
    print(f"model={model_name} tokens={len(tokens)}")
    header = (
        f"{'strategy':<15} {'loss':>10} {'ppl':>10} {'time(s)':>10} {'tok/s':>10} "
        f"{'rank':>5} {'changes':>8} {'rss_peak(MB)':>12} {'adapter(MB)':>11}"
    )
    print(header)
    for strategy in strategies:
        metrics = results[strategy]
        print(
            f"{strategy:<15}"
            f" {metrics['final_loss']:>10.4f}"
            f" {metrics['perplexity']:>10.2f}"
            f" {metrics['elapsed_s']:>10.2f}"
            f" {metrics['tokens_per_s']:>10.1f}"
            f" {int(metrics['final_rank']):>5}"
            f" {int(metrics['rank_changes']):>8}"
            f" {metrics['peak_rss_mb']:>12.1f}"
            f" {metrics['adapter_mb']:>11.2f}"
        )


if __name__ == "__main__":
    main()
