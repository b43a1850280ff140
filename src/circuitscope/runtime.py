"""
Model runtime: one loaded model and tokenizer, and the calls analysis needs.

ModelSession owns everything tied to a loaded model (weights, tokenizer,
device, the input-embedding module used for steering) and exposes three
operations:

    forward_pass(text)          → ForwardOutput with whatever the model returns
    generate(prompt, ...)       → sampled continuation, optionally steered
    final_hidden_state(text)    → residual stream at the last token

Generation Loop:
----------------
Steering adds a vector to the input embeddings of every position, so the
loop feeds the model embeddings rather than token ids:

    PREFILL:  embeds = embed(prompt_ids) + delta      → cache K, V
    DECODE:   embeds = embed(last_token) + delta      → extend cache
              logits → temperature / top-k → next token

The unsteered path is the same loop with no delta added, so a disabled
config or strength 0 gives exactly the tokens an unsteered run gives for the
same seed.

Any object with the same methods can stand in for ModelSession (see
ModelRuntime); the analysis code only relies on the protocol.
"""

import logging
from typing import List, Optional, Protocol, Sequence

import numpy as np
import torch

from src.circuitscope.device_utils import get_device, seed_everything
from src.circuitscope.errors import InvalidInputError, ModelRuntimeError
from src.circuitscope.interpretability.steering import SteeringConfig, apply_steering
from src.circuitscope.outputs import ForwardOutput, GenerationConfig, GenerationResult
from src.circuitscope.sampling import sample_next_token


logger = logging.getLogger(__name__)

# Byte-level BPE and SentencePiece word-start markers
TOKEN_MARKERS = ("Ġ", "▁")

# Where common architectures keep the final norm before the unembedding
FINAL_NORM_PATHS = (
    "transformer.ln_f",
    "model.norm",
    "gpt_neox.final_layer_norm",
    "model.final_layernorm",
    "model.decoder.final_layer_norm",
)


class ModelRuntime(Protocol):
    """What the analysis pipeline and steering construction need from a model."""

    def forward_pass(self, text: str, output_attentions: bool = True,
                     output_hidden_states: bool = True) -> ForwardOutput:
        ...

    def generate(self, prompt: str, config: Optional[GenerationConfig] = None,
                 steering: Optional[SteeringConfig] = None) -> GenerationResult:
        ...

    def final_hidden_state(self, text: str, layer: int = -1) -> np.ndarray:
        ...

    def decode_token(self, token_id: int) -> str:
        ...


def cache_keys(past_key_values) -> Optional[List[torch.Tensor]]:
    """
    Per-layer key tensors from a key/value cache in any of the formats
    transformers has used: legacy tuples, Cache objects with .layers, or
    Cache objects with .key_cache.
    """
    if past_key_values is None:
        return None

    keys = None
    if hasattr(past_key_values, "layers"):
        keys = [getattr(layer, "keys", None) for layer in past_key_values.layers]
    elif hasattr(past_key_values, "key_cache"):
        keys = list(past_key_values.key_cache)
    elif isinstance(past_key_values, (tuple, list)):
        keys = [layer[0] if layer else None for layer in past_key_values]

    if not keys or any(k is None for k in keys):
        return None
    return keys


def _resolve_attr(obj, path: str):
    for name in path.split("."):
        obj = getattr(obj, name, None)
        if obj is None:
            return None
    return obj


def clean_token(text: str) -> str:
    """Replace word-start markers with a space."""
    for marker in TOKEN_MARKERS:
        text = text.replace(marker, " ")
    return text


class ModelSession:
    """
    A loaded causal language model.

    Args:
        model: A transformers causal LM (or any nn.Module with the same call
               signature)
        tokenizer: Object with encode(), decode() and optionally
                   convert_ids_to_tokens() and eos_token_id
        device: Where the model lives; defaults to its parameters' device
        model_name: Model id, used for vocabulary-size lookup and display

    Example:
        with ModelSession.from_pretrained("gpt2") as session:
            output = session.forward_pass("The cat sat on the mat")
            print(output.tokens)
    """

    def __init__(self, model, tokenizer, device: Optional[torch.device] = None,
                 model_name: Optional[str] = None):
        self.model = model
        self.model.eval()
        self.tokenizer = tokenizer
        self.device = device or next(model.parameters()).device
        self.config = getattr(model, "config", None)
        self.model_name = model_name or getattr(self.config, "name_or_path", None) or "model"
        self.embeddings = model.get_input_embeddings()

    @classmethod
    def from_pretrained(cls, model_id: str, device_type: Optional[str] = None) -> "ModelSession":
        """
        Load a Hugging Face model with eager attention so attention weights
        are returned.

        Raises:
            ModelRuntimeError: If the model or tokenizer cannot be loaded
        """
        from transformers import AutoModelForCausalLM, AutoTokenizer

        device, device_name = get_device(device_type)
        logger.info("Loading %s on %s", model_id, device_name)

        try:
            tokenizer = AutoTokenizer.from_pretrained(model_id)
            model = AutoModelForCausalLM.from_pretrained(
                model_id,
                torch_dtype=torch.float32,
                attn_implementation="eager",
            )
        except (OSError, ValueError) as e:
            raise ModelRuntimeError(f"Could not load model '{model_id}': {e}") from e

        model.to(device)
        return cls(model, tokenizer, device=device, model_name=model_id)

    def close(self):
        """Drop the model and free device memory."""
        device_type = self.device.type
        self.model = None
        self.tokenizer = None
        self.embeddings = None
        if device_type == "cuda":
            torch.cuda.empty_cache()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Model metadata
    # ------------------------------------------------------------------

    @property
    def model_type(self) -> str:
        return getattr(self.config, "model_type", None) or self.model_name

    @property
    def vocab_size(self) -> Optional[int]:
        return getattr(self.config, "vocab_size", None)

    @property
    def num_heads(self) -> Optional[int]:
        return getattr(self.config, "num_attention_heads", None) or getattr(self.config, "n_head", None)

    @property
    def num_layers(self) -> Optional[int]:
        return getattr(self.config, "num_hidden_layers", None) or getattr(self.config, "n_layer", None)

    @property
    def hidden_size(self) -> int:
        return self.embeddings.weight.shape[-1]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def encode(self, text: str) -> List[int]:
        if not text or not text.strip():
            raise InvalidInputError("Text is empty")
        token_ids = list(self.tokenizer.encode(text))
        if not token_ids:
            raise InvalidInputError(f"Text {text!r} produced no tokens")
        return token_ids

    def decode_token(self, token_id: int) -> str:
        """Display string for one token; "[id]" if the tokenizer cannot decode it."""
        try:
            text = self.tokenizer.decode([int(token_id)])
        except Exception:  # noqa: BLE001 - tokenizers raise anything on bad ids
            text = None
        if not text and hasattr(self.tokenizer, "convert_ids_to_tokens"):
            try:
                text = self.tokenizer.convert_ids_to_tokens(int(token_id))
            except Exception:  # noqa: BLE001
                text = None
        if not text:
            return f"[{int(token_id)}]"
        return clean_token(text)

    def decode(self, token_ids: Sequence[int]) -> str:
        return self.tokenizer.decode(list(token_ids))

    # ------------------------------------------------------------------
    # Forward pass
    # ------------------------------------------------------------------

    def _run(self, token_ids: Sequence[int], output_attentions: bool, output_hidden_states: bool):
        input_ids = torch.tensor([list(token_ids)], dtype=torch.long, device=self.device)
        try:
            with torch.no_grad():
                return self.model(
                    input_ids=input_ids,
                    output_attentions=output_attentions,
                    output_hidden_states=output_hidden_states,
                    use_cache=True,
                )
        except RuntimeError as e:
            raise ModelRuntimeError(f"Forward pass failed: {e}") from e

    def forward_pass(self, text: str, output_attentions: bool = True,
                     output_hidden_states: bool = True) -> ForwardOutput:
        """
        Run the model once over `text` and collect everything it returns.

        Missing pieces (no attentions under fused attention kernels, no
        cache) stay None; the attention resolver copes with that.
        """
        token_ids = self.encode(text)
        out = self._run(token_ids, output_attentions, output_hidden_states)

        def to_cpu(tensors):
            if tensors is None or any(t is None for t in tensors):
                return None
            return [t.detach().float().cpu() for t in tensors]

        return ForwardOutput(
            tokens=[self.decode_token(t) for t in token_ids],
            token_ids=token_ids,
            logits=out.logits.detach().float().cpu(),
            attentions=to_cpu(getattr(out, "attentions", None)),
            keys=to_cpu(cache_keys(getattr(out, "past_key_values", None))),
            hidden_states=to_cpu(getattr(out, "hidden_states", None)),
            vocab_size=self.vocab_size,
            num_heads=self.num_heads,
        )

    def final_hidden_state(self, text: str, layer: int = -1) -> np.ndarray:
        """Hidden state at the last token of `text`, (hidden_size,) float32."""
        out = self._run(self.encode(text), output_attentions=False, output_hidden_states=True)
        hidden_states = getattr(out, "hidden_states", None)
        if not hidden_states:
            raise ModelRuntimeError("Model did not return hidden states")
        return hidden_states[layer][0, -1].detach().float().cpu().numpy()

    # ------------------------------------------------------------------
    # Unembedding (logit lens)
    # ------------------------------------------------------------------

    def final_norm(self):
        for path in FINAL_NORM_PATHS:
            module = _resolve_attr(self.model, path)
            if module is not None:
                return module
        return None

    def unembed(self, hidden: torch.Tensor) -> torch.Tensor:
        """Project a residual-stream vector to vocabulary logits."""
        head = self.model.get_output_embeddings()
        if head is None:
            raise ModelRuntimeError("Model has no output embedding")
        param = next(head.parameters())
        hidden = hidden.to(device=param.device, dtype=param.dtype)
        with torch.no_grad():
            norm = self.final_norm()
            if norm is not None:
                hidden = norm(hidden)
            return head(hidden).detach().float().cpu()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(self, prompt: str, config: Optional[GenerationConfig] = None,
                 steering: Optional[SteeringConfig] = None) -> GenerationResult:
        """
        Sample a continuation of `prompt` with a KV cache.

        Args:
            prompt: Text to continue
            config: Sampling settings; a seed makes the run reproducible
            steering: Vector and strength added to every input embedding

        Returns:
            GenerationResult with the decoded continuation
        """
        config = config or GenerationConfig()
        delta = steering.effective_delta() if steering is not None else None

        prompt_ids = self.encode(prompt)
        if config.seed is not None:
            seed_everything(config.seed, self.device)

        eos_token_id = getattr(self.tokenizer, "eos_token_id", None)
        step_ids = torch.tensor([prompt_ids], dtype=torch.long, device=self.device)
        past = None
        new_ids = []

        with torch.no_grad():
            for _ in range(config.max_new_tokens):
                embeds = apply_steering(self.embeddings(step_ids), delta)
                try:
                    out = self.model(inputs_embeds=embeds, past_key_values=past, use_cache=True)
                except RuntimeError as e:
                    raise ModelRuntimeError(f"Generation failed: {e}") from e
                past = out.past_key_values

                next_token = sample_next_token(out.logits[:, -1, :], config.temperature, config.top_k)
                token_id = int(next_token.item())
                new_ids.append(token_id)

                if eos_token_id is not None and token_id == eos_token_id:
                    break
                step_ids = next_token.view(1, 1)

        return GenerationResult(
            prompt=prompt,
            generated_text=self.decode(new_ids),
            token_ids=prompt_ids + new_ids,
            new_token_ids=new_ids,
            steered=delta is not None,
        )
