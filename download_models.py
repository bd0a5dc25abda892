from pathlib import Path
import os

from huggingface_hub import snapshot_download
from review_pulse import config


def main() -> None:
    # Use the same HF env as the rest of the app, but force ONLINE for this script
    os.environ.update(config.HF_ENV_VARS)
    os.environ["HF_HUB_OFFLINE"] = "0"

    cache_root = Path(os.environ.get("TRANSFORMERS_CACHE", str(config.MODELS_DIR))).resolve()
    print(f"Using TRANSFORMERS_CACHE: {cache_root}")

    def fetch(repo_id: str) -> str:
        print(f"\nDownloading repo: {repo_id}")
        local_path = snapshot_download(repo_id=repo_id, local_files_only=False)
        print(f"Cached at: {local_path}")

        cfg = Path(local_path) / "config.json"
        if not cfg.exists():
            print(f"  WARNING: config.json NOT found in: {local_path}")
        return local_path

    paths = {repo: fetch(repo) for repo in config.SENTIMENT_MODEL_CANDIDATES}

    print("\nSummary:")
    for repo, path in paths.items():
        print(f"  {repo} cached at: {path}")


if __name__ == "__main__":
    main()
