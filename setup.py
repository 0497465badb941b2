import re

from setuptools import setup


with open("couchback.py", "r") as infile:
    version = re.search(r'^__version__ = "([^"]+)"', infile.read(),
                        re.MULTILINE).group(1)


setup(name="CouchBack",
      version=version,
      description="CouchDB Python 3 interface with completion callbacks.",
      long_description=open("README.md", "r").read(),
      long_description_content_type="text/markdown",
      python_requires=">= 3.6",
      py_modules=["couchback"],
      install_requires=[
          "requests>=2",
      ],
      classifiers=[
          "License :: OSI Approved :: MIT License",
          "Intended Audience :: Developers",
          "Natural Language :: English",
          "Development Status :: 3 - Alpha",
          "Programming Language :: Python :: 3 :: Only",
          "Programming Language :: Python :: 3.6",
          "Operating System :: OS Independent",
          "Topic :: Database :: Front-Ends",
          "Topic :: Software Development :: Libraries :: Python Modules"
      ],
)
