from setuptools import setup, find_packages

setup(
    name="togglebox-engine",
    version="1.0.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=[
        "pandas>=2.0.0",
        "numpy>=1.21.0",
        "httpx>=0.24.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "respx>=0.20.0",
            "scipy>=1.7.0",
        ],
    },
)
