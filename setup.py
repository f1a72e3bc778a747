from setuptools import setup, find_packages

setup(
    name="ai_collab_hub",
    version="0.1.0",
    description="A coordination hub giving independent AI agents shared memory, messaging, consensus and budgeted autonomy",
    author="Kai-C-Clarke",
    packages=find_packages(include=["ai_collab_hub", "ai_collab_hub.*"]),
    install_requires=[
        "fastapi>=0.104.1",
        "uvicorn>=0.24.0",
        "websockets>=12.0",
        "pydantic>=2.5.0",
        "redis>=5.0.1",
        "schedule>=1.2.0",
        "psutil>=5.9.6",
        "python-dotenv>=1.0.0",
        "PyYAML>=6.0",
        "requests>=2.31.0",
        "networkx>=3.1",
        "numpy>=1.24.0"
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "httpx>=0.25.0"
        ]
    },
    entry_points={
        "console_scripts": [
            "ai-collab-hub=ai_collab_hub.main:main",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
