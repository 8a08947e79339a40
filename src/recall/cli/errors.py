"""recall rich error messages with actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from recall.cli.errors import err_no_api_key
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
        "voyage": "VOYAGE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_embedding_unavailable(model: str, reason: str) -> str:
    """The embedding model could not be reached."""
    return (
        f"[red]Error:[/] Embedding model '{model}' is unavailable: {reason}\n"
        "  Check the model name (embedding.model in recall.yaml) and your network."
    )


def warn_keyword_only(model: str) -> str:
    """Search continues without the vector leg."""
    return (
        f"[yellow]Warning:[/] Embedding model '{model}' not ready — keyword-only results.\n"
        "  Set the provider API key to enable semantic search."
    )


def err_no_data(data_dir: str) -> str:
    """No stores found in the data directory."""
    return (
        f"[red]Error:[/] No recall data found at '{data_dir}'.\n"
        "  Run:  recall ingest <path>"
    )


def err_config(message: str) -> str:
    """Config file is invalid."""
    return f"[red]Error:[/] Invalid configuration.\n  {message}"


def err_storage(message: str) -> str:
    """Storage layer failure (disk, corruption, dimension mismatch)."""
    return (
        f"[red]Error:[/] Storage failure: {message}\n"
        "  If you changed embedding models, run:  recall purge --all --yes  and re-ingest."
    )


def err_path_not_found(path: str) -> str:
    return f"[red]Error:[/] Path not found: '{path}'"


def err_nothing_to_purge() -> str:
    return (
        "[red]Error:[/] Nothing selected to purge.\n"
        "  Use one of:  --session ID  --source ID  --older-than DAYS  --all"
    )
