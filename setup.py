from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="sc-workflow",
    version="1.0.0",
    author="thesecondfox",
    author_email="thesecondfox@users.noreply.github.com",
    description="A single-cell RNA-seq reference workflow: empty droplets, QC, deconvolution normalization, SNN clustering and marker detection",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/thesecondfox/sc-workflow",
    project_urls={
        "Bug Tracker": "https://github.com/thesecondfox/sc-workflow/issues",
        "Source Code": "https://github.com/thesecondfox/sc-workflow",
    },
    packages=find_packages(include=['sc_workflow', 'sc_workflow.*']),
    package_data={
        'sc_workflow': ['config/*.yaml'],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        'dev': ['pytest>=6.0', 'black>=21.0', 'flake8>=3.9'],
    },
    entry_points={
        "console_scripts": [
            "sc-workflow=sc_workflow.main:main",
        ],
    },
    keywords="single-cell RNA-seq bioinformatics scanpy emptydrops clustering marker-genes",
)
