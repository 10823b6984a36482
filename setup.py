"""
Setup script for progress-engine.

Progress Engine is the learning-progress and adaptive-difficulty core of
the Right Learning ecosystem. It serves three roles:

1. Progress Ledger - Monotonic section/lesson/course completion state
2. Mastery Evaluation - Recency-weighted, explainable mastery decisions
3. Adaptive Difficulty - In-session difficulty adjustment with content hints

The 'progress-engine' command offers admin tooling (replay, inspect, purge).
"""

from setuptools import find_packages, setup

setup(
    name="progress-engine",
    version="1.0.0",
    description="Learning-progress and adaptive-difficulty engine - part of Right Learning",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    author="Right Learning",
    url="https://github.com/rightlearning/progress-engine",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy>=2.0.0",
        "psycopg2-binary>=2.9.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP
        "httpx>=0.25.0",
        # Logging
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "progress-engine=progress_engine.cli.main:run",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
        "Topic :: Education :: Computer Aided Instruction (CAI)",
    ],
    keywords="learning progress mastery adaptive-difficulty education",
)
