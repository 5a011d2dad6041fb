from setuptools import setup, find_packages

setup(
    name="dynamic-storage-sizing",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "kubernetes>=26.1.0",
        "urllib3>=1.26.0",
        "prometheus_client>=0.17.0",
        "psutil>=5.9.0",
        "aiohttp>=3.8.0",
        "flask>=2.3.0",
        "psycopg2-binary>=2.9.0",
        "croniter>=1.4.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    python_requires=">=3.9",
)
