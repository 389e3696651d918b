"""
llama-session :: CLI

Usage:
    llama-session inspect <model> [--tensors]
    llama-session generate <model> --prompt "Hello" [--n-predict 128] [--temp 0.8] [--seed 0]
    llama-session embed <model> --prompt "Hello"
    llama-session convert <src> <dst.gguf> [--type q8_0]

INL - 2025
"""

import argparse
import json
import sys

from llama_session.core.errors import LlamaSessionError
from llama_session.core.logging import setup_logging


def _model_config(args, **extra):
    from llama_session.core.config import ModelConfig

    return ModelConfig(
        path=args.model,
        n_ctx=args.n_ctx,
        seed=args.seed,
        n_parts=args.n_parts,
        use_mlock=args.mlock,
        enable_logging=args.verbose,
        device=args.device,
        **extra,
    )


def cmd_inspect(args):
    """Print container, hyperparameters and vocabulary of a model file."""
    from llama_session.core.loader import open_model_file

    mf = open_model_file(args.model, n_parts=args.n_parts)
    try:
        hp = mf.hparams
        print(f"Model:       {mf.path}")
        print(f"Format:      {mf.format} ({len(mf.parts)} part{'s' if len(mf.parts) != 1 else ''})")
        print(f"Arch:        {hp.arch}")
        print(f"Vocab:       {hp.vocab_size} ({mf.vocab.model})")
        print(f"Embedding:   {hp.n_embd}")
        print(f"Layers:      {hp.n_layer}")
        print(f"Heads:       {hp.n_head} (kv {hp.n_head_kv})")
        print(f"FFN:         {hp.n_ff}")
        print(f"Context:     {hp.n_ctx_train}")
        print(f"RoPE base:   {hp.rope_freq_base}")
        print(f"Tokens:      bos={mf.vocab.bos_token_id} eos={mf.vocab.eos_token_id} unk={mf.vocab.unk_token_id}")
        if args.tensors:
            print(f"\n{'Tensor':<32} {'Type':>6} {'Shape':>16}")
            print("-" * 56)
            for name, shape in mf.tensor_shapes.items():
                shape_str = "x".join(str(d) for d in shape)
                print(f"{name:<32} {mf.tensor_types[name]:>6} {shape_str:>16}")
    finally:
        mf.close()


def cmd_generate(args):
    """Stream a completion to stdout."""
    from llama_session.core.config import GenerationRequest
    from llama_session.engine.session import load

    request = GenerationRequest(
        prompt=args.prompt,
        n_threads=args.threads,
        n_tok_predict=args.n_predict,
        top_k=args.top_k,
        top_p=args.top_p,
        temp=args.temp,
        repeat_penalty=args.repeat_penalty,
        stop_sequence=args.stop,
    )
    with load(_model_config(args)) as session:
        with session.generate(request) as stream:
            for frag in stream:
                sys.stdout.write(frag.text)
                sys.stdout.flush()
        result = stream.result
        sys.stdout.write("\n")
        print(
            f"[{result.finish_reason}] {len(result.prompt_tokens)} prompt + "
            f"{len(result.output_tokens)} generated tokens, "
            f"prefill {result.prefill_ms:.1f} ms, decode {result.decode_ms:.1f} ms",
            file=sys.stderr,
        )


def cmd_embed(args):
    """Print the prompt embedding as JSON."""
    from llama_session.engine.session import load

    with load(_model_config(args, embedding=True)) as session:
        vec = session.embed(args.prompt, n_threads=args.threads)
    print(json.dumps(vec))


def cmd_convert(args):
    """Rewrite a model (GGUF or safetensors) as GGUF, quantizing 2-D weights."""
    from llama_session.core.gguf import GGUFWriter
    from llama_session.core.loader import open_model_file
    from llama_session.core.quantization import GGML_TYPES_BY_NAME, F32

    target = GGML_TYPES_BY_NAME[args.type]
    mf = open_model_file(args.model, n_parts=args.n_parts)
    try:
        tensors = mf.read_tensors()
        writer = GGUFWriter(args.output)
        for key, value in mf.metadata.items():
            if key != "general.alignment":
                writer.add_metadata(key, value)
        for name, t in tensors.items():
            arr = t.numpy()
            ttype = target if arr.ndim == 2 and arr.size % target.block_size == 0 else F32
            writer.add_tensor(name, arr, type_id=ttype.type_id)
        writer.write()
    finally:
        mf.close()
    print(f"wrote {args.output}: {len(tensors)} tensors as {target.name}")


def _add_model_args(p):
    p.add_argument("model", help="Path to a GGUF or safetensors model file")
    p.add_argument("--n-ctx", type=int, default=2048)
    p.add_argument("--n-parts", type=int, default=-1, help="-1 = detect from file name")
    p.add_argument("--seed", type=int, default=0)
    p.add_argument("--mlock", action="store_true", help="Lock weights and cache in RAM")
    p.add_argument("--device", default="cpu")
    p.add_argument("--threads", type=int, default=4)
    p.add_argument("--verbose", action="store_true", help="Log load and request timings")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llama-session",
        description="Minimal LLaMA inference session",
    )
    parser.add_argument("--log-level", default="WARNING")
    parser.add_argument("--json-logs", action="store_true")
    sub = parser.add_subparsers(dest="command")

    # inspect
    p_inspect = sub.add_parser("inspect", help="Show model header")
    p_inspect.add_argument("model")
    p_inspect.add_argument("--n-parts", type=int, default=-1)
    p_inspect.add_argument("--tensors", action="store_true", help="List tensors")
    p_inspect.set_defaults(func=cmd_inspect)

    # generate
    p_gen = sub.add_parser("generate", help="Generate text")
    _add_model_args(p_gen)
    p_gen.add_argument("--prompt", required=True)
    p_gen.add_argument("--n-predict", type=int, default=128)
    p_gen.add_argument("--top-k", type=int, default=40)
    p_gen.add_argument("--top-p", type=float, default=0.95)
    p_gen.add_argument("--temp", type=float, default=0.8)
    p_gen.add_argument("--repeat-penalty", type=float, default=1.1)
    p_gen.add_argument("--stop", default=None, help="Stop sequence")
    p_gen.set_defaults(func=cmd_generate)

    # embed
    p_embed = sub.add_parser("embed", help="Print prompt embedding")
    _add_model_args(p_embed)
    p_embed.add_argument("--prompt", default="")
    p_embed.set_defaults(func=cmd_embed)

    # convert
    p_conv = sub.add_parser("convert", help="Convert / quantize to GGUF")
    p_conv.add_argument("model")
    p_conv.add_argument("output")
    p_conv.add_argument("--n-parts", type=int, default=-1)
    p_conv.add_argument("--type", default="q8_0", choices=["f32", "f16", "q8_0", "q4_0"])
    p_conv.set_defaults(func=cmd_convert)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    setup_logging(level=args.log_level, json_output=args.json_logs)
    try:
        args.func(args)
    except LlamaSessionError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
