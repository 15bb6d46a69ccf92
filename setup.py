from setuptools import setup, find_namespace_packages

setup(
    name="instrusign",
    version="0.1.0",
    packages=find_namespace_packages(include=["instrusign*"]),
    include_package_data=True,
    install_requires=[
        "rich",
        "requests",
        "python-dotenv",
        "lief",
        "toml",
        "rich-argparse",
        "asn1crypto",
        "cryptography",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "instrusign=instrusign.cli:main",
        ],
    },
)
