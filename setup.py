from setuptools import setup
from os import path

here = path.abspath(path.dirname(__file__))

with open(path.join(here, "README.rst"), encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="gated_git_server",
    author="Jane Soko",
    author_email="boynamedjane@misled.ml",
    version="0.1.0",
    url="https://github.com/poppyschmo/gated-git-server",
    description="Git smart HTTP server behind basic auth",
    long_description=long_description,
    license="Apache 2.0",
    keywords="backend git http server basic auth cgi",
    classifiers=[
        "License :: OSI Approved :: Apache Software License",
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "Programming Language :: Python :: 3",
        "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
        "Topic :: Software Development :: Version Control :: Git"
    ],
    install_requires=[],
    extras_require={"test": ["pytest"]},
    packages=[],
    py_modules=["gated_git_server"],
    python_requires=">=3.7",
    entry_points={
        "console_scripts": ["gated-git-server = gated_git_server:main"]
    }
)
