from pathlib import Path
import os

from huggingface_hub import snapshot_download
from taskpipe import config
from taskpipe.registry import SUPPORTED_TASKS, TASK_NAME_MAPPING


def main() -> None:
    # Use the same HF env as the rest of the app, but force ONLINE for this script
    os.environ.update(config.HF_ENV_VARS)
    os.environ["HF_HUB_OFFLINE"] = "0"  # allow downloads just for this script

    print(f"Using MODELS_DIR: {config.MODELS_DIR}")

    def fetch(repo_id: str, task: str) -> str:
        local_dir = Path(
            config.DEFAULT_MODEL_PATH_TEMPLATE.replace("{model}", repo_id).replace("{task}", task)
        )
        print(f"\nDownloading repo: {repo_id} -> {local_dir}")
        local_path = snapshot_download(repo_id=repo_id, local_dir=str(local_dir))

        # Quick sanity check for config.json
        cfg = Path(local_path) / "config.json"
        if cfg.exists():
            print(f"  Found config.json at: {cfg}")
        else:
            print(f"  WARNING: config.json NOT found in: {local_path}")
        return local_path

    fetched = {}
    for task, task_config in SUPPORTED_TASKS.items():
        for variant, repo_id in task_config.default_models.items():
            full_task = task if variant == "default" else f"{task}_{variant}"
            folder = TASK_NAME_MAPPING.get(full_task, full_task)
            fetched[full_task] = fetch(repo_id, folder)

    print("\nSummary:")
    for task, path in fetched.items():
        print(f"  {task:<28} {path}")
    print("\nFinished downloading default models for offline use.")
    print(f"Set TASKPIPE_MODEL_PATH_TEMPLATE={config.DEFAULT_MODEL_PATH_TEMPLATE} to use them.")


if __name__ == "__main__":
    main()
