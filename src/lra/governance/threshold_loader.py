from pathlib import Path

from azure.identity import DefaultAzureCredential
from azure.storage.filedatalake import DataLakeServiceClient
from loguru import logger

from lra.common.config import ThresholdSource
from lra.common.contract import THRESHOLD_DEFINITION_V1, load_contract
from lra.common.errors import ConfigurationError
from lra.governance.thresholds import ThresholdTable, parse_json, parse_jsonl


def load_thresholds_from_file(path: Path, repo_root: Path) -> ThresholdTable:
    validator = load_contract(repo_root, THRESHOLD_DEFINITION_V1)
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".jsonl":
        return parse_jsonl(text, validator)
    return parse_json(text, validator)


def load_thresholds_from_adls(
    *,
    account: str,
    container: str,
    path: str,
    repo_root: Path,
) -> ThresholdTable:
    url = f"https://{account}.dfs.core.windows.net"
    dl = DataLakeServiceClient(account_url=url, credential=DefaultAzureCredential())
    fs = dl.get_file_system_client(container)

    file_client = fs.get_file_client(path)
    download = file_client.download_file()
    text = download.readall().decode("utf-8")
    return parse_jsonl(text, load_contract(repo_root, THRESHOLD_DEFINITION_V1))


def load_threshold_table(source: ThresholdSource, repo_root: Path) -> ThresholdTable:
    try:
        if source.kind == "adls":
            table = load_thresholds_from_adls(
                account=str(source.account),
                container=str(source.container),
                path=source.path,
                repo_root=repo_root,
            )
        else:
            p = Path(source.path)
            table = load_thresholds_from_file(p if p.is_absolute() else repo_root / p, repo_root)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot load threshold table from {source.kind}:{source.path}: {e}")

    logger.info(f"Loaded {len(table)} threshold definitions from {source.kind}:{source.path}")
    return table
