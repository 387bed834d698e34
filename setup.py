from setuptools import setup, find_packages


def parse_requirements(filename):
    with open(filename, "r") as file:
        return [line.strip() for line in file if line.strip() and not line.startswith("#")]


setup(
    name="klinecache",
    version="0.1.0",
    description="Persistent, gap-aware candle storage with an in-memory TTL cache",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=parse_requirements("requirements.txt"),
    extras_require={
        "tests": parse_requirements("requirements-tests.txt"),
        "dev": ["nox"],
    },
    include_package_data=True,
    zip_safe=False,
)
