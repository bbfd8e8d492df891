from setuptools import find_namespace_packages, setup

setup(
    name="liveclass-backend",
    version="0.1.0",
    packages=find_namespace_packages(include=["services*", "shared*", "models*"]),
    py_modules=["app", "database"],
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "pydantic>=2.5",
        "sqlalchemy>=2.0",
        "python-jose[cryptography]>=3.3",
        "python-dotenv>=1.0",
        "pyyaml>=6.0",
        "redis>=5.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    include_package_data=True,
    python_requires=">=3.11",
    description="Backend package for LiveClass (live slide sync, comments, groups and polls)",
)
