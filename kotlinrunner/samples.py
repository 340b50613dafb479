"""Bundled demo script printed by ``kotlinrunner sample``."""

SAMPLE_SCRIPT = """\
// kotlinrunner demo: a class, an object, loops, `when`, and a deliberate crash.

class Greeter(private val name: String) {
    fun greet(): String =
        if (name.isNotBlank()) "Hello, $name!" else "Hello, stranger!"

    fun greetLoudly(): String = "${greet()}!"
}

object Demo {
    fun run() {
        val greeter = Greeter("kotlinrunner")
        println(greeter.greet())
        println(greeter.greetLoudly())
        println(greeter.greet())

        for (i in 1..5) {
            println("for i=$i")
        }

        var j = 0
        while (j < 3) {
            println("while j=$j")
            j++
        }

        when (kotlin.random.Random.nextInt(0, 3)) {
            0 -> println("when: zero")
            1 -> println("when: one")
            else -> println("when: other")
        }

        Thread.sleep(200)
    }
}

println("=== sample start ===")

Demo.run()
println("Running Demo.run() again...")
Demo.run()

// Uncomment for a compile-time error instead:
// val bad: String = 123

// Runtime error: the stack trace on stderr points back into this file
println("Dividing by zero...")
val crash = 1 / 0

for (i in 1..7) {
    println("Line $i")
    Thread.sleep(100)
}

println("=== sample end ===")
"""
