# setup.py
from setuptools import setup, find_packages
from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding="utf-8")

setup(
    name="ladderocr",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src", include=["ladderocr", "ladderocr.*"]),
    author="Phuoc Nguyen",
    description="Budgeted, multi-attempt OCR for scanned documents and images, tuned for Thai and English.",
    long_description=long_description,
    long_description_content_type='text/markdown',
    python_requires=">=3.9",

    install_requires=[
        "pytesseract",
        "pythainlp",
        "python-slugify",
        "PyMuPDF",
        "tqdm",
        "Pillow",
        "numpy"
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        'console_scripts': [
            'ladderocr=ladderocr.cli:main',
        ],
    },
)
