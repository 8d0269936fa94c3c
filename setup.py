import os.path

from setuptools import setup

def read(fname):
    with open(os.path.join(os.path.dirname(__file__), fname)) as fp:
        return fp.read()

setup(
    name='apnsbinary',
    version='0.2.0',
    author='Sardar Yumatov',
    author_email='ja.doma@gmail.com',
    url='https://bitbucket.org/sardarnl/apns-client',
    description='Python client for the binary Apple Push Notification service (APNs) protocol',
    long_description=read('README.rst'),
    packages=['apnsbinary'],
    license="Apache 2.0",
    keywords='apns push notification feedback apple messaging iOS',
    python_requires='>=3.7',
    install_requires=['pyOpenSSL>=24.3.0', 'cryptography'],
    extras_require={'test': ['mock']},
    classifiers = [ 'Development Status :: 4 - Beta',
                    'Intended Audience :: Developers',
                    'License :: OSI Approved :: Apache Software License',
                    'Programming Language :: Python',
                    'Programming Language :: Python :: 3',
                    'Topic :: Software Development :: Libraries :: Python Modules']
)
