import setuptools
from pathlib import Path
##############################################

def _read_version() -> str:
    about: dict = {}
    version_path = Path(__file__).parent / "rnaseq_explore" / "_version.py"
    exec(version_path.read_text(encoding="utf-8"), about)
    return about["__version__"]

with open("README.md", "r") as fh:
    long_description = fh.read()

with open("requirements.txt", "r") as fh:
    install_requires = fh.read()

setuptools.setup(
     name='rnaseq_explore',
     version=_read_version(),
     author="Scott Tyler",
     author_email="scottyler89@gmail.com",
     description="Exploratory bulk RNA-seq normalization, differential expression and gene-set enrichment",
     long_description_content_type="text/markdown",
     long_description=long_description,
     install_requires = install_requires,
     extras_require={"test": ["pytest"]},
     packages=setuptools.find_packages(exclude=("tests", "tests.*", "scripts")),
     include_package_data=True,
     classifiers=[
         "Programming Language :: Python :: 3",
         "License :: OSI Approved :: GNU Affero General Public License v3",
         "Operating System :: OS Independent",
     ],
 )
