from setuptools import setup, find_packages

setup(
    name="dicomview-core",
    version="1.0.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "numpy>=1.24.0",
        "Pillow>=10.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pydicom>=3.0.0",
        ],
    },
)
