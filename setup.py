from setuptools import setup, find_packages

setup(
    name="accountlink",
    version="0.1.0",
    description="Cross-account association handshakes for EVM accounts (EIP-712, ERC-1271, interop addresses)",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "eth-abi>=5.0.0",
        "eth-account>=0.13.0",
        "eth-keys>=0.5.0",
        "eth-utils>=4.0.0",
        "web3>=7.0.0",
        "httpx>=0.25.0",
        "pydantic>=2.5.0",
        "python-json-logger>=3.1.0",
    ],
    extras_require={"dev": ["pytest>=7.0", "pytest-asyncio>=0.23"]},
    entry_points={"console_scripts": ["accountlink=accountlink.cli:main"]},
    python_requires=">=3.10",
    license="CC0-1.0",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Security :: Cryptography",
        "Topic :: Software Development :: Libraries",
        "License :: CC0 1.0 Universal (CC0 1.0) Public Domain Dedication",
        "Programming Language :: Python :: 3",
    ],
    keywords="ethereum eip712 erc1271 erc7930 association attestation handshake",
)
