from mousestress.analysis import main

main()
