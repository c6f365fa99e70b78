"""Build peershare package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="peershare",
    version="0.1.0",
    description="Peer-to-peer file transfer over WebRTC data channels",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests*", "testing*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiortc>=1.9.0",
        "click",
        "cryptography>=39.0.1",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "websockets>=14.0",
    ],
    extras_require={
        "dev": [
            "coverage",
            "pytest",
            "pytest-asyncio>=0.23.2",
            "pytest-timeout",
        ],
    },
    entry_points={
        "console_scripts": [
            "peershare=peershare.peer:cli",
            "peershare-relay=peershare.relay.run:cli",
        ],
    },
)
