# Copyright © 2025 WASM TEE

import re
import os
import codecs
from os import path
from io import open
from setuptools import setup, find_packages


here = path.abspath(path.dirname(__file__))

with open(path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

with codecs.open(os.path.join(here, "wasm_tee/__init__.py"), encoding="utf-8") as init_file:
    version_match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]", init_file.read(), re.M)
    if not version_match:
        raise RuntimeError("Unable to find version string in wasm_tee/__init__.py")
    version_string = version_match.group(1)


requirements = [
    # WASM runtime (inside the enclave)
    "wasmtime>=20.0.0",

    # Wire models
    "pydantic>=2.0.0",
    "typing-extensions>=4.7.0",

    # Configuration
    "python-dotenv>=1.0.0",

    # CLI
    "click>=8.1.0",
]

test_requirements = [
    "pytest>=7.4.0",
    "hypothesis>=6.0.0",
]

setup(
    name="wasm_tee",
    version=version_string,
    description="Execute WebAssembly with injected secrets inside an AWS Nitro Enclave",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(include=["wasm_tee", "wasm_tee.*"]),
    include_package_data=True,
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={"test": test_requirements},
    entry_points={
        "console_scripts": [
            "wasm-tee-enclave=wasm_tee.cli:enclave",
            "wasm-tee-relay=wasm_tee.cli:relay",
            "wasm-tee-client=wasm_tee.cli:client",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3 :: Only",
        "Topic :: Security",
        "Topic :: System :: Distributed Computing",
    ],
)
