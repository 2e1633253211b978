from setuptools import find_packages, setup

setup(
    name="devsecops-pipeline",
    version="0.1.0",
    packages=find_packages(
        include=[
            "pipeline_common",
            "pipeline_common.*",
            "pipeline_definition",
            "pipeline_definition.*",
            "pipeline_persistence",
            "pipeline_persistence.*",
            "pipeline_runner",
            "pipeline_runner.*",
            "pipeline_server",
            "pipeline_server.*",
            "pipeline_client",
            "pipeline_client.*",
            "pipeline_admin",
            "pipeline_admin.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pipeline=pipeline_client.cli:main",
            "pipeline-runner=pipeline_runner.__main__:main",
            "pipeline-admin=pipeline_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
