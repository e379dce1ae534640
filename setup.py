import setuptools

try:
    with open("README.md", "r", encoding="utf-8") as fh:
        long_description = fh.read()
except FileNotFoundError:
    long_description = "Build, push and pull multi-component applications as registry artifacts"

setuptools.setup(
    name="cloudpack",
    version="0.1.0",
    description="Build, push and pull multi-component applications as registry artifacts",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=setuptools.find_packages(where="src", include=["cloudpack", "cloudpack.*"]),
    install_requires=[
        "httpx>=0.27",
        "pydantic>=2.11",
        "python-dotenv>=1.0",
        "rich>=13.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.11",
)
