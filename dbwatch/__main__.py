from dbwatch.cli import main

main()
