import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="vault-cert-controller",
    version="0.0.1",
    description="Kubernetes controller issuing and rotating Vault PKI certificates for services",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    py_modules=[
        "cert_checker",
        "cert_issuer",
        "cert_manager",
        "cert_revoker",
        "config",
        "context",
        "controller",
        "kubernetes_service",
        "service_watcher",
        "token_broker",
        "utils",
        "vault_client",
    ],
    install_requires=[
        "cryptography>=42",
        "flask",
        "kubernetes",
        "PyYAML",
        "requests",
        "urllib3",
        "werkzeug",
    ],
    extras_require={
        "test": [
            "pytest",
            "responses",
        ],
    },
    entry_points={
        "console_scripts": [
            "vault-cert-controller=controller:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: POSIX",
    ],
    python_requires=">=3.8",
)
