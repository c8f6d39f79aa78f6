from setuptools import setup, find_packages


setup(
    name="cask",
    version="0.1",
    packages=find_packages(),
    description="Single-file asset containers with byte-exact headers and AES-256-GCM sealing.",
    python_requires=">=3.9",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": [
            "cask=cask.cli:main",
        ]
    },
)
