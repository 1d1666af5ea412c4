from pathlib import Path
from setuptools import setup

long_description = (Path(__file__).parent / "README.md").read_text()

setup(
    name="dkifit",
    version="0.1.0",
    description=(
        "Diffusion kurtosis tensor estimation with constrained weighted linear least "
        "squares in Python."
    ),
    license="MIT",
    packages=["dkifit"],
    python_requires=">=3.9",
    install_requires=[
        "cvxpy>=1.4",
        "jax>=0.4.14",
        "jaxlib>=0.4.14",
        "joblib>=1.2",
        "nibabel>=5.0",
        "numba>=0.57",
        "numpy>=1.24",
        "tqdm>=4.60",
    ],
    extras_require={"test": ["pytest>=7"]},
    scripts=["dkifit/dkifit.py"],
    long_description=long_description,
    long_description_content_type="text/markdown",
)
