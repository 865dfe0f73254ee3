#!/usr/bin/env python

# To upload this file to PyPI you must build it then upload it:
# python setup.py sdist bdist_wheel  # build in 'dist' folder
# python -m twine upload dist/*  # 'twine' must be installed: 'pip install twine'


import ast
import io
import re
import os
from setuptools import setup

DEPENDENCIES = ["click", "cryptography>=42", "httpx", "idna", "pyopenssl>=20"]
TEST_DEPENDENCIES = ["pytest"]
CURDIR = os.path.abspath(os.path.dirname(__file__))

with io.open(os.path.join(CURDIR, "README.md"), "r", encoding="utf-8") as f:
    README = f.read()


def get_version():
    main_file = os.path.join(CURDIR, "certcheck.py")
    _version_re = re.compile(r"__version__\s+=\s+(?P<version>.*)")
    with open(main_file, "r", encoding="utf8") as f:
        match = _version_re.search(f.read())
        version = match.group("version") if match is not None else '"unknown"'
    return str(ast.literal_eval(version))


setup(
    name="certcheck",
    version=get_version(),
    description="Monitoring check that reports certificate expiry metrics.",
    long_description=README,
    long_description_content_type="text/markdown",
    py_modules=["certcheck"],
    include_package_data=True,
    keywords=["monitoring", "tls", "x509"],
    scripts=[],
    entry_points={"console_scripts": ["certcheck=certcheck:main"]},
    zip_safe=False,
    install_requires=DEPENDENCIES,
    extras_require={"test": TEST_DEPENDENCIES},
    python_requires=">=3.10",
    # license and classifier list:
    # https://pypi.org/pypi?%3Aaction=list_classifiers
    license="License :: OSI Approved :: MIT License",
    classifiers=[
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Operating System :: OS Independent",
    ],
)
