"""
llama-session :: Generation Benchmark

Measures single-session inference throughput:
  - Prompt processing (prefill) tok/s
  - Token generation (decode) tok/s with the KV cache
  - Full requests through a ModelSession (optional model file)

Run:
    python benchmarks/bench_generation.py
    python benchmarks/bench_generation.py path/to/model.gguf

INL - 2025
"""

import sys
import time
from typing import Dict, List

import torch

from llama_session.backend.base import BackendOptions
from llama_session.backend.torch_backend import TorchBackend
from llama_session.core.kv_cache import KVCache
from llama_session.core.loader import HyperParams


def random_llama(hp: HyperParams, device: str = "cpu") -> Dict[str, torch.Tensor]:
    """Random weights under llama GGUF tensor names."""
    kv_dim = hp.n_head_kv * hp.head_dim

    def w(*shape):
        return torch.randn(*shape) * 0.02

    tensors = {
        "token_embd.weight": w(hp.vocab_size, hp.n_embd),
        "output_norm.weight": torch.ones(hp.n_embd),
        "output.weight": w(hp.vocab_size, hp.n_embd),
    }
    for i in range(hp.n_layer):
        tensors[f"blk.{i}.attn_norm.weight"] = torch.ones(hp.n_embd)
        tensors[f"blk.{i}.attn_q.weight"] = w(hp.n_embd, hp.n_embd)
        tensors[f"blk.{i}.attn_k.weight"] = w(kv_dim, hp.n_embd)
        tensors[f"blk.{i}.attn_v.weight"] = w(kv_dim, hp.n_embd)
        tensors[f"blk.{i}.attn_output.weight"] = w(hp.n_embd, hp.n_embd)
        tensors[f"blk.{i}.ffn_norm.weight"] = torch.ones(hp.n_embd)
        tensors[f"blk.{i}.ffn_gate.weight"] = w(hp.n_ff, hp.n_embd)
        tensors[f"blk.{i}.ffn_up.weight"] = w(hp.n_ff, hp.n_embd)
        tensors[f"blk.{i}.ffn_down.weight"] = w(hp.n_embd, hp.n_ff)
    return tensors


def _cache(hp: HyperParams, n_ctx: int, backend: TorchBackend) -> KVCache:
    return KVCache(
        num_layers=hp.n_layer,
        num_kv_heads=hp.n_head_kv,
        head_dim=hp.head_dim,
        n_ctx=n_ctx,
        compute_dtype=backend.compute_dtype,
        device=backend.device,
    )


def bench_prefill(
    backend: TorchBackend,
    hp: HyperParams,
    prompt_lengths: List[int] = [32, 128, 512],
    n_iters: int = 5,
) -> List[dict]:
    """Benchmark prefill (prompt processing) throughput."""
    results = []

    for seq_len in prompt_lengths:
        tokens = torch.randint(3, hp.vocab_size, (seq_len,)).tolist()
        cache = _cache(hp, seq_len, backend)

        # Warmup
        backend.forward(tokens, cache)
        cache.reset()

        start = time.perf_counter()
        for _ in range(n_iters):
            backend.forward(tokens, cache)
            cache.reset()
        elapsed = time.perf_counter() - start

        results.append({
            "phase": "prefill",
            "seq_len": seq_len,
            "ms_per_call": round(elapsed / n_iters * 1000, 2),
            "tok_per_sec": int(seq_len * n_iters / elapsed),
        })

    return results


def bench_decode(
    backend: TorchBackend,
    hp: HyperParams,
    context_lengths: List[int] = [16, 256],
    num_steps: int = 64,
) -> List[dict]:
    """Benchmark greedy decode steps after a prefill of each context length."""
    results = []

    for ctx in context_lengths:
        cache = _cache(hp, ctx + num_steps, backend)
        out = backend.forward(torch.randint(3, hp.vocab_size, (ctx,)).tolist(), cache)

        start = time.perf_counter()
        for _ in range(num_steps):
            token = int(out.last_logits.argmax())
            out = backend.forward([token], cache)
        elapsed = time.perf_counter() - start

        results.append({
            "phase": "decode",
            "context": ctx,
            "ms_per_step": round(elapsed / num_steps * 1000, 2),
            "tok_per_sec": int(num_steps / elapsed),
        })

    return results


def bench_session(model_path: str, prompts: List[str], n_tok_predict: int = 64) -> dict:
    """Benchmark full requests through a ModelSession."""
    from llama_session import ModelConfig, load

    with load(ModelConfig(path=model_path, n_ctx=1024, seed=0)) as session:
        start = time.perf_counter()
        total_prompt = 0
        total_output = 0
        prefill_ms = 0.0
        decode_ms = 0.0
        for prompt in prompts:
            result = session.complete(prompt=prompt, n_tok_predict=n_tok_predict, temp=0)
            total_prompt += len(result.prompt_tokens)
            total_output += result.num_output_tokens
            prefill_ms += result.prefill_ms
            decode_ms += result.decode_ms
        elapsed = time.perf_counter() - start

    return {
        "num_requests": len(prompts),
        "total_prompt_tokens": total_prompt,
        "total_output_tokens": total_output,
        "elapsed_s": round(elapsed, 3),
        "prompt_tok_per_sec": int(total_prompt / (prefill_ms / 1000)) if prefill_ms else 0,
        "output_tok_per_sec": int(total_output / (decode_ms / 1000)) if decode_ms else 0,
    }


if __name__ == "__main__":
    print("=" * 60)
    print("llama-session :: Generation Benchmark")
    print("=" * 60)

    hp = HyperParams(vocab_size=32000, n_embd=512, n_layer=4, n_head=8, n_head_kv=4, n_ff=1408)
    device = "cuda" if torch.cuda.is_available() else "cpu"
    backend = TorchBackend(device=device)
    backend.load_weights(hp, random_llama(hp), BackendOptions())
    print(f"Device: {device}")
    print(f"Parameters: {backend.model.num_parameters():,}")

    # Prefill
    print("\n--- Prefill ---")
    print(f"{'SeqLen':>8} {'ms/call':>10} {'tok/s':>12}")
    print("-" * 35)
    for r in bench_prefill(backend, hp):
        print(f"{r['seq_len']:>8} {r['ms_per_call']:>10} {r['tok_per_sec']:>12,}")

    # Decode
    print("\n--- Decode ---")
    print(f"{'Context':>8} {'ms/step':>10} {'tok/s':>12}")
    print("-" * 35)
    for r in bench_decode(backend, hp):
        print(f"{r['context']:>8} {r['ms_per_step']:>10} {r['tok_per_sec']:>12,}")

    backend.free()

    # Session requests
    if len(sys.argv) > 1:
        print("\n--- Session Requests ---")
        prompts = ["Hello", "The capital of France is", "Once upon a time, in a land far away,"]
        r = bench_session(sys.argv[1], prompts)
        print(f"  Requests:     {r['num_requests']}")
        print(f"  Prompt tok:   {r['total_prompt_tokens']}")
        print(f"  Output tok:   {r['total_output_tokens']}")
        print(f"  Elapsed:      {r['elapsed_s']}s")
        print(f"  Prompt tok/s: {r['prompt_tok_per_sec']:,}")
        print(f"  Output tok/s: {r['output_tok_per_sec']:,}")

    print("\nDone.")
