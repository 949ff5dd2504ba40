from aptmirror.cli import main

main()
