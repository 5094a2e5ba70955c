#!/usr/bin/env python

import ast
import os

from setuptools import setup  # type: ignore[import]


def read(*relpath, **kwargs):
    with open(os.path.join(os.path.dirname(__file__), *relpath),
              encoding=kwargs.get("encoding", "utf8")) as fh:
        return fh.read()

def readlines(*relpath, **kwargs):
    with open(os.path.join(os.path.dirname(__file__), *relpath),
              encoding=kwargs.get("encoding", "utf8")) as fh:
        return [line.strip() for line in fh if line.strip() and not line.startswith("#")]

# Pick up __version__ without running the package __init__.py at build time.
init_py_path = os.path.join("colloquy", "__init__.py")
version = None
try:
    with open(init_py_path) as f:
        for line in f:
            if line.startswith("__version__"):
                module = ast.parse(line, filename=init_py_path)
                expr = module.body[0]
                assert isinstance(expr, ast.Assign)
                v = expr.value
                if isinstance(v, ast.Constant):
                    version = v.value
                break
except FileNotFoundError:
    pass
if not version:
    raise RuntimeError(f"Version information not found in {init_py_path}")

setup(
    name="colloquy",
    version=version,
    packages=["colloquy", "colloquy.common", "colloquy.client"],
    provides=["colloquy"],
    keywords=["LLM", "chat", "client", "streaming", "AI", "NLP"],
    install_requires=readlines("requirements.txt"),
    extras_require={"test": ["pytest"]},
    python_requires=">=3.10",
    description="Streaming chat clients for LLM backends, with a branching conversation store",
    long_description=read("README.md"),
    long_description_content_type="text/markdown",
    license="BSD",
    platforms=["Linux"],
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: Utilities"
    ],
    entry_points={"console_scripts": ["colloquy-minichat=colloquy.client.minichat:main"]},
    zip_safe=True
)
