from biolink.client import run

run()
