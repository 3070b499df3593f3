from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="educafric-backend",
    version="1.0.0",
    author="EducAfric",
    author_email="dev@educafric.com",
    description="EducAfric school management REST backend",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/educafric/educafric-backend",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["wsgi"],
    include_package_data=True,
    install_requires=[
        'Flask>=2.3.3',
        'Flask-SQLAlchemy>=3.0.5',
        'Flask-WTF>=1.2.1',
        'python-dotenv>=1.0.0',
        'SQLAlchemy>=2.0.43',
        'WTForms>=3.0.1',
        'Werkzeug>=2.3.7',
        'gunicorn>=21.2.0',
        'psycopg2-binary>=2.9.9',
        'bcrypt>=4.0.1',
        'python-jose>=3.3.0',
        'requests>=2.31.0',
        'pandas>=2.0.0',
        'openpyxl>=3.1.0',
        'xlrd>=2.0.1',
        'stripe>=8.0.0',
        'fpdf2>=2.7.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
        ],
    },
    python_requires='>=3.9',
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    entry_points={
        'console_scripts': [
            'educafric=wsgi:main',
        ],
    },
)
