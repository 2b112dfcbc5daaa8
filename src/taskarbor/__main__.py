from taskarbor.cli import main

main()
