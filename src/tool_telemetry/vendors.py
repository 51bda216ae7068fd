"""
Vendor canonicalization: maps OTLP resource attributes to a stable vendor identity.

Every resource block is reduced to a ``CanonicalVendor`` (slug, display name,
category). The slug is the key tool profiles are aggregated under, so the
mapping must be deterministic: the same attributes always produce the same
vendor, and the function never raises.

Resolution order:

1. ``gen_ai.system``: the sender declares an LLM vendor.
2. ``service.name``: substring match against known tool fingerprints, then the
   host signals ``cloud.provider`` and ``process.executable.name``.
3. ``sdk.name``: same fingerprint table.
4. ``gen_ai.request.model`` / ``gen_ai.response.model``: model family prefix.
5. Fallback ``unknown``.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

CATEGORY_LLM = "llm"
CATEGORY_IDE = "ide"
CATEGORY_AGENT = "agent"
CATEGORY_RUNTIME = "runtime"
CATEGORY_SANDBOX = "sandbox"
CATEGORY_TOOL_SERVER = "tool-server"
CATEGORY_UNKNOWN = "unknown"

CATEGORIES = frozenset({
    CATEGORY_LLM,
    CATEGORY_IDE,
    CATEGORY_AGENT,
    CATEGORY_RUNTIME,
    CATEGORY_SANDBOX,
    CATEGORY_TOOL_SERVER,
    CATEGORY_UNKNOWN,
})

UNKNOWN_SLUG = "unknown"


@dataclass(frozen=True)
class CanonicalVendor:
    slug: str
    display_name: str
    category: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "slug": self.slug,
            "display_name": self.display_name,
            "category": self.category,
        }


# gen_ai.system value (lowercased) -> (slug, display name)
_LLM_SYSTEMS: Dict[str, Tuple[str, str]] = {
    "anthropic": ("anthropic", "Anthropic (Claude)"),
    "openai": ("openai", "OpenAI"),
    "openrouter": ("openrouter", "OpenRouter"),
    "google": ("google-gemini", "Google Gemini"),
    "gemini": ("google-gemini", "Google Gemini"),
    "gcp.gemini": ("google-gemini", "Google Gemini"),
    "vertex_ai": ("google-gemini", "Google Gemini"),
    "gcp.vertex_ai": ("google-gemini", "Google Gemini"),
    "aws.bedrock": ("aws-bedrock", "AWS Bedrock"),
    "az.ai.openai": ("azure-openai", "Azure OpenAI"),
    "azure.ai.openai": ("azure-openai", "Azure OpenAI"),
    "mistral_ai": ("mistral", "Mistral AI"),
    "mistral": ("mistral", "Mistral AI"),
    "cohere": ("cohere", "Cohere"),
    "groq": ("groq", "Groq"),
    "deepseek": ("deepseek", "DeepSeek"),
    "xai": ("xai", "xAI (Grok)"),
    "ollama": ("ollama", "Ollama"),
    "perplexity": ("perplexity", "Perplexity"),
}

_VSCODE = CanonicalVendor("vscode", "VS Code", CATEGORY_IDE)
_CLOUDFLARE_WORKERS = CanonicalVendor("cloudflare-workers", "Cloudflare Workers", CATEGORY_RUNTIME)

# Ordered: more specific fingerprints come before the vendors they contain
# ("claude-code" before "anthropic", "codex" before "openai").
_TOOL_FINGERPRINTS: List[Tuple[Tuple[str, ...], CanonicalVendor]] = [
    (("claude-code", "claude_code", "claude code"),
     CanonicalVendor("claude-code", "Claude Code", CATEGORY_AGENT)),
    (("codex",), CanonicalVendor("openai-codex", "OpenAI Codex", CATEGORY_AGENT)),
    (("cursor",), CanonicalVendor("cursor", "Cursor", CATEGORY_IDE)),
    (("copilot",), CanonicalVendor("github-copilot", "GitHub Copilot", CATEGORY_IDE)),
    (("windsurf", "codeium"), CanonicalVendor("windsurf", "Windsurf", CATEGORY_IDE)),
    (("gemini-cli", "gemini_cli"), CanonicalVendor("gemini-cli", "Gemini CLI", CATEGORY_AGENT)),
    (("cline",), CanonicalVendor("cline", "Cline", CATEGORY_AGENT)),
    (("aider",), CanonicalVendor("aider", "Aider", CATEGORY_AGENT)),
    (("vscode", "vs-code", "visual studio code"), _VSCODE),
    (("arcade",), CanonicalVendor("arcade", "Arcade Dev", CATEGORY_TOOL_SERVER)),
    (("e2b",), CanonicalVendor("e2b", "E2B Sandbox", CATEGORY_SANDBOX)),
    (("cloudflare", "workers"), _CLOUDFLARE_WORKERS),
    (("anthropic", "claude"), CanonicalVendor("anthropic", "Anthropic (Claude)", CATEGORY_LLM)),
    (("openrouter",), CanonicalVendor("openrouter", "OpenRouter", CATEGORY_LLM)),
    (("openai",), CanonicalVendor("openai", "OpenAI", CATEGORY_LLM)),
    (("bedrock",), CanonicalVendor("aws-bedrock", "AWS Bedrock", CATEGORY_LLM)),
]

# Model name prefix -> gen_ai.system key in _LLM_SYSTEMS
_MODEL_PREFIXES: List[Tuple[str, str]] = [
    ("claude", "anthropic"),
    ("gpt-", "openai"),
    ("gpt4", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("o4", "openai"),
    ("chatgpt", "openai"),
    ("gemini", "google"),
    ("mistral", "mistral"),
    ("mixtral", "mistral"),
    ("codestral", "mistral"),
    ("command", "cohere"),
    ("deepseek", "deepseek"),
    ("grok", "xai"),
]

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """Lowercase *name* and collapse non-alphanumeric runs into single dashes."""
    return _SLUG_RE.sub("-", (name or "").lower()).strip("-")


def canonicalize_vendor(attrs: Optional[Dict[str, str]]) -> CanonicalVendor:
    """Determine the canonical vendor for a flattened resource attribute map."""
    attrs = attrs or {}

    system = (attrs.get("gen_ai.system") or "").strip()
    if system:
        return _llm_vendor(system)

    service_name = (attrs.get("service.name") or "").strip()
    vendor = _match_fingerprint(service_name)
    if vendor:
        return vendor

    vendor = _match_host(attrs)
    if vendor:
        return vendor

    vendor = _match_fingerprint(attrs.get("sdk.name") or "")
    if vendor:
        return vendor

    model = (attrs.get("gen_ai.request.model") or attrs.get("gen_ai.response.model") or "").strip().lower()
    if model:
        # "anthropic/claude-3.5-sonnet" style router ids carry the family after the slash
        family = model.rsplit("/", 1)[-1]
        for prefix, system_key in _MODEL_PREFIXES:
            if family.startswith(prefix):
                return _llm_vendor(system_key)

    return CanonicalVendor(
        slug=UNKNOWN_SLUG,
        display_name=service_name or UNKNOWN_SLUG,
        category=CATEGORY_UNKNOWN,
    )


def _llm_vendor(system: str) -> CanonicalVendor:
    known = _LLM_SYSTEMS.get(system.lower())
    if known:
        slug, display_name = known
        return CanonicalVendor(slug, display_name, CATEGORY_LLM)
    return CanonicalVendor(slugify(system) or UNKNOWN_SLUG, system, CATEGORY_LLM)


def _match_host(attrs: Dict[str, str]) -> Optional[CanonicalVendor]:
    if (attrs.get("cloud.provider") or "").strip().lower() == "cloudflare":
        return _CLOUDFLARE_WORKERS
    executable = (attrs.get("process.executable.name") or "").strip().lower()
    if executable == "code":
        return _VSCODE
    return _match_fingerprint(executable)


def _match_fingerprint(value: str) -> Optional[CanonicalVendor]:
    haystack = (value or "").lower()
    if not haystack:
        return None
    for needles, vendor in _TOOL_FINGERPRINTS:
        if any(needle in haystack for needle in needles):
            return vendor
    return None


def is_llm_tool(attrs: Optional[Dict[str, str]], vendor: Optional[CanonicalVendor] = None) -> bool:
    """True when the attributes (or an already resolved vendor) describe an LLM."""
    if vendor is not None and vendor.category == CATEGORY_LLM:
        return True
    attrs = attrs or {}
    return bool(
        attrs.get("gen_ai.system")
        or attrs.get("gen_ai.request.model")
        or attrs.get("gen_ai.response.model")
    )
