from setuptools import setup, find_packages

setup(
    name="flacmig",
    version="0.1.0",
    packages=find_packages(include=["flacmig", "flacmig.*"]),
    install_requires=[
        "rich",
        "psutil",
        "PyYAML",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.8",
    description="Resumable, verified FLAC to MP3 library migration",
    entry_points={
        "console_scripts": [
            "flacmig=flacmig.cli:main",
        ]
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
