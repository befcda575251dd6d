from setuptools import find_packages, setup

setup(
    name="boostree",
    version="0.1.0",
    description="Arena-backed regression tree with exact TreeSHAP attributions",
    packages=find_packages(include=["boostree", "boostree.*"]),
    install_requires=[
        "numpy",
        "torch",
    ],
    extras_require={
        "test": [
            "pytest",
            "pandas",
        ],
    },
    python_requires=">=3.10",
)
