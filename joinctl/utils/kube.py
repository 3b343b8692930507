
import os
from pathlib import Path
from typing import Optional

from kubernetes import config

K3S_KUBECONFIG = "/etc/rancher/k3s/k3s.yaml"


def load_kubeconfig(path: Optional[str] = None) -> str:
    """
    Load the kubeconfig from a given path, the KUBECONFIG_CONTENT env var,
    or the kubeconfig K3S writes on server nodes.
    Returns the actual path used to load the kubeconfig.
    """
    # CI/CD secret-based loading
    if "KUBECONFIG_CONTENT" in os.environ:
        temp_path = "/tmp/ci-kubeconfig.yaml"
        with open(temp_path, "w") as f:
            f.write(os.environ["KUBECONFIG_CONTENT"])
        os.chmod(temp_path, 0o600)
        config.load_kube_config(config_file=temp_path)
        return temp_path

    candidates = [path] if path else [os.environ.get("KUBECONFIG"), K3S_KUBECONFIG]
    for candidate in filter(None, candidates):
        resolved = Path(os.path.expanduser(candidate)).resolve()
        if resolved.exists():
            config.load_kube_config(config_file=str(resolved))
            return str(resolved)
        if path:
            raise FileNotFoundError(f"❌ Kubeconfig not found: {resolved}")

    raise ValueError("No kubeconfig path provided, KUBECONFIG_CONTENT is not set and "
                     f"{K3S_KUBECONFIG} does not exist.")
