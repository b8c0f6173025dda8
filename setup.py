"""
Setup script for torch-lfmmi.

Pure PyTorch; there are no compiled extensions. To install for development:
    pip install -e ".[test]"
"""

from pathlib import Path

from setuptools import find_packages, setup

HERE = Path(__file__).parent


def read_version():
    """Read __version__ from the package without importing it (torch may be absent)."""
    init = HERE / "src" / "torch_lfmmi" / "__init__.py"
    for line in init.read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip("\"'")
    raise RuntimeError(f"__version__ not found in {init}")


def main():
    setup(
        name="torch-lfmmi",
        version=read_version(),
        description="Lattice-free MMI (chain) training objective for PyTorch acoustic models",
        package_dir={"": "src"},
        packages=find_packages(where="src"),
        python_requires=">=3.9",
        install_requires=["torch>=2.0"],
        extras_require={"test": ["pytest>=7"]},
        license="MIT",
    )


if __name__ == "__main__":
    main()
