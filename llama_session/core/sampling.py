"""
llama-session :: Sampling

Pick the next token from a logits vector.

Order of operations:
  1. logit bias (additive)
  2. repetition penalties over the last repeat_last_n context tokens
       repeat_penalty once per distinct token: divide positive logits,
       multiply negative ones
       frequency / presence: logit -= count * frequency + presence
  3. temp == 0 → greedy argmax (lowest index wins ties)
  4. temperature scaling
  5. mirostat v1 / v2 (replaces 6-8 when enabled)
  6. top-k, stable descending sort (ties → lower vocabulary index)
  7. tail-free (tfs_z), locally typical (typical_p)
  8. top-p: smallest prefix whose cumulative probability ≥ top_p
  9. draw with torch.multinomial from the session's generator

Same generator state + same logits + same history → same token.

INL - 2025
"""

import math
import torch
from typing import Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass


@dataclass
class SamplingParams:
    """Sampling parameters, one set per request."""
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    repeat_penalty: float = 1.1
    repeat_last_n: int = 64        # 0 = off, -1 = whole context
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    penalize_nl: bool = True
    tfs_z: float = 1.0
    typical_p: float = 1.0
    mirostat: int = 0
    mirostat_tau: float = 5.0
    mirostat_eta: float = 0.1
    logit_bias: Optional[Dict[int, float]] = None

    @classmethod
    def from_request(cls, request) -> "SamplingParams":
        return cls(
            temperature=request.temp,
            top_k=request.top_k,
            top_p=request.top_p,
            repeat_penalty=request.repeat_penalty,
            repeat_last_n=request.repeat_last_n,
            frequency_penalty=request.frequency_penalty,
            presence_penalty=request.presence_penalty,
            penalize_nl=request.penalize_nl,
            tfs_z=request.tfs_z,
            typical_p=request.typical_p,
            mirostat=request.mirostat,
            mirostat_tau=request.mirostat_tau,
            mirostat_eta=request.mirostat_eta,
            logit_bias=request.logit_bias,
        )


# Candidates: (logits, token_ids), sorted by logit descending.
Candidates = Tuple[torch.Tensor, torch.Tensor]


# =========================================================================
# Logit transforms (operate on the full vocabulary)
# =========================================================================

def apply_logit_bias(logits: torch.Tensor, bias: Optional[Dict[int, float]]) -> torch.Tensor:
    if bias:
        ids = torch.tensor(list(bias.keys()), dtype=torch.long)
        logits[ids] += torch.tensor(list(bias.values()), dtype=logits.dtype)
    return logits


def penalty_window(history: Sequence[int], repeat_last_n: int) -> List[int]:
    """The tail of the context the penalties look at."""
    if repeat_last_n == 0 or not history:
        return []
    if repeat_last_n < 0:
        return list(history)
    return list(history[-repeat_last_n:])


def apply_penalties(
    logits: torch.Tensor,
    window: Sequence[int],
    repeat_penalty: float = 1.0,
    frequency_penalty: float = 0.0,
    presence_penalty: float = 0.0,
) -> torch.Tensor:
    """
    Penalize tokens present in `window`.

    repeat_penalty is applied once per distinct token, however often
    it occurs.
    """
    if not window:
        return logits
    tokens = torch.tensor(window, dtype=torch.long)
    token_set, counts = tokens.unique(return_counts=True)

    if repeat_penalty != 1.0:
        penalty_logits = logits[token_set]
        # Penalize: reduce positive, amplify negative
        logits[token_set] = torch.where(
            penalty_logits > 0,
            penalty_logits / repeat_penalty,
            penalty_logits * repeat_penalty,
        )

    if frequency_penalty != 0.0 or presence_penalty != 0.0:
        logits[token_set] -= counts.to(logits.dtype) * frequency_penalty + presence_penalty

    return logits


def greedy(logits: torch.Tensor) -> int:
    """argmax; the first (lowest) index wins ties."""
    return int(logits.argmax().item())


# =========================================================================
# Candidate filters (operate on sorted candidates)
# =========================================================================

def sort_candidates(logits: torch.Tensor, ids: Optional[torch.Tensor] = None) -> Candidates:
    values, order = torch.sort(logits, descending=True, stable=True)
    if ids is None:
        return values, order
    return values, ids[order]


def top_k_filter(cands: Candidates, k: int) -> Candidates:
    values, ids = cands
    if 0 < k < values.shape[0]:
        return values[:k], ids[:k]
    return cands


def tail_free_filter(cands: Candidates, z: float) -> Candidates:
    """Cut where the normalized second derivative of the sorted probabilities sums past z."""
    values, ids = cands
    n = values.shape[0]
    if z >= 1.0 or n <= 2:
        return cands

    probs = torch.softmax(values, dim=-1)
    second = (probs[:-2] - 2 * probs[1:-1] + probs[2:]).abs()
    total = second.sum()
    if total > 0:
        second = second / total
    cum = second.cumsum(dim=-1)

    keep = n
    past = torch.nonzero(cum > z).flatten()
    past = past[past >= 1]
    if past.numel() > 0:
        keep = int(past[0].item())
    return values[:keep], ids[:keep]


def typical_filter(cands: Candidates, p: float) -> Candidates:
    """Keep tokens whose surprise is closest to the distribution's entropy, up to mass p."""
    values, ids = cands
    if p >= 1.0 or values.shape[0] <= 1:
        return cands

    log_probs = torch.log_softmax(values, dim=-1)
    probs = log_probs.exp()
    finite = torch.isfinite(log_probs)
    entropy = -(probs[finite] * log_probs[finite]).sum()

    shifted = (-log_probs - entropy).abs()
    order = torch.sort(shifted, stable=True).indices
    cum = probs[order].cumsum(dim=-1)

    past = torch.nonzero(cum > p).flatten()
    keep = int(past[0].item()) + 1 if past.numel() > 0 else values.shape[0]
    kept = order[:keep]
    return sort_candidates(values[kept], ids[kept])


def top_p_filter(cands: Candidates, p: float) -> Candidates:
    """Smallest prefix whose cumulative probability reaches p; never empty."""
    values, ids = cands
    if p >= 1.0:
        return cands
    probs = torch.softmax(values, dim=-1)
    cum = probs.cumsum(dim=-1)
    reached = torch.nonzero(cum >= p).flatten()
    keep = int(reached[0].item()) + 1 if reached.numel() > 0 else values.shape[0]
    keep = max(1, keep)
    return values[:keep], ids[:keep]


def draw(cands: Candidates, generator: Optional[torch.Generator] = None) -> Tuple[int, float]:
    """Sample one candidate. Returns (token_id, probability)."""
    values, ids = cands
    probs = torch.softmax(values, dim=-1)
    idx = int(torch.multinomial(probs, num_samples=1, generator=generator).item())
    return int(ids[idx].item()), float(probs[idx].item())


# =========================================================================
# Sampler
# =========================================================================

class Sampler:
    """
    Per-request sampler.

    Holds the mirostat running estimate (mu); the random generator
    belongs to the session and is shared across requests.
    """

    MIROSTAT_M = 100

    def __init__(
        self,
        params: SamplingParams,
        generator: Optional[torch.Generator] = None,
        newline_token_id: Optional[int] = None,
    ):
        self.params = params
        self.generator = generator
        self.newline_token_id = newline_token_id
        self.mirostat_mu = 2.0 * params.mirostat_tau

    def sample(self, logits: torch.Tensor, history: Sequence[int] = ()) -> int:
        """
        Sample a single token.

        Args:
            logits: (vocab_size,) tensor; not modified
            history: context so far (prompt + generated), oldest first
        """
        p = self.params
        logits = logits.detach().to(device="cpu", dtype=torch.float32).clone()

        apply_logit_bias(logits, p.logit_bias)

        nl = self.newline_token_id
        nl_logit = logits[nl].item() if nl is not None and not p.penalize_nl else None
        apply_penalties(
            logits,
            penalty_window(history, p.repeat_last_n),
            p.repeat_penalty,
            p.frequency_penalty,
            p.presence_penalty,
        )
        if nl_logit is not None:
            logits[nl] = nl_logit

        if p.temperature == 0.0:
            return greedy(logits)

        logits = logits / p.temperature
        cands = sort_candidates(logits)

        if p.mirostat == 1:
            return self._mirostat_v1(cands, logits.shape[0])
        if p.mirostat == 2:
            return self._mirostat_v2(cands)

        cands = top_k_filter(cands, p.top_k)
        cands = tail_free_filter(cands, p.tfs_z)
        cands = typical_filter(cands, p.typical_p)
        cands = top_p_filter(cands, p.top_p)
        token_id, _ = draw(cands, self.generator)
        return token_id

    # ── mirostat ──

    def _update_mu(self, prob: float):
        surprise = -math.log2(prob) if prob > 0 else float("inf")
        self.mirostat_mu -= self.params.mirostat_eta * (surprise - self.params.mirostat_tau)

    def _mirostat_v1(self, cands: Candidates, n_vocab: int) -> int:
        values, _ = cands
        probs = torch.softmax(values, dim=-1)

        # Zipf exponent estimate over the top M candidates
        m = min(self.MIROSTAT_M, probs.shape[0])
        sum_ti_bi = 0.0
        sum_ti_sq = 0.0
        for i in range(m - 1):
            if probs[i + 1] <= 0:
                break
            t_i = math.log((i + 2) / (i + 1))
            b_i = math.log(probs[i].item() / probs[i + 1].item())
            sum_ti_bi += t_i * b_i
            sum_ti_sq += t_i * t_i
        s_hat = sum_ti_bi / sum_ti_sq if sum_ti_sq > 0 else 1.0

        eps_hat = s_hat - 1.0
        if abs(eps_hat) < 1e-9 or s_hat <= 0:
            k = n_vocab
        else:
            try:
                k_float = ((eps_hat * 2.0 ** self.mirostat_mu) / (1.0 - n_vocab ** (-eps_hat))) ** (1.0 / s_hat)
            except (OverflowError, ZeroDivisionError):
                k_float = float("inf")
            k = int(k_float) if math.isfinite(k_float) else n_vocab
        k = max(1, min(k, n_vocab))

        token_id, prob = draw(top_k_filter(cands, k), self.generator)
        self._update_mu(prob)
        return token_id

    def _mirostat_v2(self, cands: Candidates) -> int:
        values, ids = cands
        probs = torch.softmax(values, dim=-1)
        surprise = -torch.log2(probs)
        keep = int((surprise <= self.mirostat_mu).sum().item())
        keep = max(1, keep)

        token_id, prob = draw((values[:keep], ids[:keep]), self.generator)
        self._update_mu(prob)
        return token_id


def sample_token(
    logits: torch.Tensor,
    params: SamplingParams,
    past_tokens: Optional[List[int]] = None,
    generator: Optional[torch.Generator] = None,
) -> int:
    """One-shot sampling without mirostat state carried across calls."""
    return Sampler(params, generator).sample(logits, past_tokens or ())
