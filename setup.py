import os
import re

from setuptools import find_packages, setup

ROOT_DIR = os.path.dirname(__file__)


def get_litevlm_version() -> str:
    with open(os.path.join(ROOT_DIR, "litevlm", "version.py")) as f:
        match = re.search(r'^__version__ = "([^"]+)"', f.read(), re.MULTILINE)
    if match is None:
        raise RuntimeError("Unable to find __version__ in litevlm/version.py")
    return match.group(1)


# litevlm - vision-language model loading and generation, pure PyTorch
setup(
    name="litevlm",
    version=get_litevlm_version(),
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "torch",
        "transformers",
        "safetensors",
        "huggingface_hub",
        "filelock",
        "numpy",
        "tqdm",
        "pillow",
        "pydantic>=2",
        "msgspec>=0.18",
    ],
    extras_require={
        "test": ["pytest", "tokenizers"],
    },
    include_package_data=True,
)
